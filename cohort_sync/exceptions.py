"""
Exception hierarchy for the sync pipeline.

Exception Hierarchy:
    SyncError (base)
    ├── ApiError       - Shopify API failures (network, timeout, HTTP, GraphQL)
    └── DatabaseError  - Sink failures (query, upsert, RPC)

    ValidationSkip     - Not an exception: a record dropped during extraction
"""
from dataclasses import dataclass
from typing import Any, Optional


class SyncError(Exception):
    """Base exception for all sync pipeline errors."""

    def __init__(self, message: str, code: str = "unknown", details: Any = None):
        self.message = message
        self.code = code
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ApiError(SyncError):
    """
    Failure talking to the Shopify API.

    Codes: timeout, network, http_status, graphql_error, throttled,
    invalid_response, env_missing.
    """

    TRANSIENT_CODES = ("timeout", "network", "http_status", "throttled")

    def __init__(
        self,
        message: str,
        code: str,
        status_code: Optional[int] = None,
        details: Any = None,
        original: Optional[BaseException] = None,
    ):
        super().__init__(message, code, details)
        self.status_code = status_code
        self.original = original

    @property
    def transient(self) -> bool:
        return self.code in self.TRANSIENT_CODES

    def __str__(self) -> str:
        if self.status_code:
            return f"[{self.code}] HTTP {self.status_code}: {self.message}"
        return super().__str__()


class DatabaseError(SyncError):
    """
    Failure talking to the sink.

    Codes: operational, timeout, integrity, data, programming, unsupported,
    unknown. Only operational and timeout errors are worth retrying.
    """

    TRANSIENT_CODES = ("operational", "timeout")

    def __init__(
        self,
        message: str,
        code: str = "unknown",
        details: Any = None,
        original: Optional[BaseException] = None,
    ):
        super().__init__(message, code, details)
        self.original = original

    @property
    def transient(self) -> bool:
        return self.code in self.TRANSIENT_CODES


@dataclass
class ValidationSkip:
    """A record deliberately dropped during extraction. Counted, never raised."""
    entity: str  # customer, order, line_item
    external_id: Optional[str]
    reason: str

    def __str__(self) -> str:
        return f"{self.entity} {self.external_id or '<no id>'}: {self.reason}"
