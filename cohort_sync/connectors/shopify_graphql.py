"""
Shopify GraphQL Connector

Fetches orders (with embedded customer and line items) from the Shopify
Admin GraphQL API for a processing-date window.
"""
import asyncio
from typing import Any, Dict, List, Optional

import httpx

from cohort_sync.exceptions import ApiError
from cohort_sync.utils.logger import log
from cohort_sync.utils.retry import RetryContext, RetryPolicy


ORDERS_QUERY = """
query GetOrders($first: Int!, $cursor: String, $query: String!) {
  orders(first: $first, after: $cursor, query: $query, sortKey: PROCESSED_AT) {
    edges {
      node {
        id
        name
        processedAt
        createdAt
        tags
        sourceName
        displayFinancialStatus
        displayFulfillmentStatus
        totalPriceSet { shopMoney { amount } }
        customer {
          id
          email
          firstName
          lastName
          phone
          numberOfOrders
          amountSpent { amount }
          tags
          createdAt
          updatedAt
        }
        lineItems(first: 250) {
          edges {
            node {
              id
              title
              quantity
              sku
              vendor
              originalUnitPriceSet { shopMoney { amount } }
              variant {
                id
                sku
                product { id productType vendor }
              }
            }
          }
        }
        fulfillments(first: 1) { displayStatus }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""


def _is_throttled(errors: List[Any]) -> bool:
    """True when every GraphQL error is Shopify's cost-based THROTTLED error"""
    codes = [
        (err.get("extensions") or {}).get("code") if isinstance(err, dict) else None
        for err in errors
    ]
    return bool(codes) and all(code == "THROTTLED" for code in codes)


class ShopifyGraphQLClient:
    """
    Client for the Shopify Admin GraphQL API

    Pages are fetched one at a time with a fixed delay between them; each
    request is retried under the client's RetryPolicy.
    """

    def __init__(
        self,
        store_domain: str,
        access_token: str,
        api_version: str = "2024-07",
        page_size: int = 250,
        page_delay_seconds: float = 0.5,
        request_timeout_seconds: float = 45.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            store_domain: Shopify store domain (e.g., "your-store.myshopify.com")
            access_token: Shopify Admin API access token
            api_version: API version to use
            page_size: Orders per page (Shopify maximum is 250)
            page_delay_seconds: Throttle between pages
            request_timeout_seconds: Hard timeout per request
            retry_policy: Backoff tuning for transient failures
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.store_domain = (store_domain or "").replace("https://", "").replace("http://", "").rstrip("/")
        self.access_token = access_token
        self.api_version = api_version
        self.page_size = page_size
        self.page_delay_seconds = page_delay_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=6,  # 5 retries
            base_delay=2.0,
            max_delay=30.0,
        )
        self.transport = transport
        self.pages_fetched = 0

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "ShopifyGraphQLClient":
        return cls(
            store_domain=settings.shopify_store_domain,
            access_token=settings.shopify_access_token,
            api_version=settings.shopify_api_version,
            page_size=settings.shopify_page_size,
            page_delay_seconds=settings.shopify_page_delay_seconds,
            request_timeout_seconds=settings.shopify_request_timeout_seconds,
            retry_policy=RetryPolicy(
                max_attempts=settings.shopify_max_retries + 1,
                base_delay=settings.shopify_retry_base_delay,
                max_delay=settings.shopify_retry_max_delay,
            ),
            transport=transport,
        )

    @property
    def graphql_url(self) -> str:
        return f"https://{self.store_domain}/admin/api/{self.api_version}/graphql.json"

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for Shopify API requests"""
        return {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json"
        }

    def _require_credentials(self):
        missing = [
            name for name, value in (
                ("SHOPIFY_STORE_DOMAIN", self.store_domain),
                ("SHOPIFY_ACCESS_TOKEN", self.access_token),
            ) if not value
        ]
        if missing:
            raise ApiError(f"Missing environment variables: {', '.join(missing)}", code="env_missing")

    async def fetch_orders_for_period(self, period_start: str, period_end: str) -> List[Dict[str, Any]]:
        """
        Fetch ALL orders processed within [period_start, period_end].

        Args:
            period_start: Inclusive lower bound, e.g. "2025-01-01T00:00:00Z"
            period_end: Inclusive upper bound

        Returns:
            Raw order nodes, in page order

        Raises:
            ApiError: terminal failure on any page (no partial result)
        """
        self._require_credentials()

        search = f"processed_at:>='{period_start}' AND processed_at:<='{period_end}'"
        log.info(f"Fetching Shopify orders {period_start} to {period_end}")

        orders: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        page = 0

        async with httpx.AsyncClient(transport=self.transport, timeout=self.request_timeout_seconds) as client:
            while True:
                page += 1
                variables = {"first": self.page_size, "cursor": cursor, "query": search}
                retry = RetryContext(self.retry_policy, operation_name=f"Shopify orders page {page}")
                data = await retry.execute(self._post, client, ORDERS_QUERY, variables)

                connection = data.get("orders")
                if not isinstance(connection, dict):
                    raise ApiError("Response has no orders connection", code="invalid_response", details=data)

                nodes = [
                    edge["node"] for edge in connection.get("edges") or []
                    if isinstance(edge, dict) and edge.get("node")
                ]
                orders.extend(nodes)
                self.pages_fetched += 1
                log.info(f"Fetched orders page {page}: {len(nodes)} orders (running total: {len(orders)})")

                page_info = connection.get("pageInfo") or {}
                if not page_info.get("hasNextPage"):
                    break

                cursor = page_info.get("endCursor")
                if not cursor:
                    raise ApiError("hasNextPage is true but endCursor is missing", code="invalid_response")

                await asyncio.sleep(self.page_delay_seconds)

        log.info(f"Fetched {len(orders)} orders in {page} pages")
        return orders

    async def _post(self, client: httpx.AsyncClient, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """Issue one GraphQL request and return its `data` object"""
        try:
            response = await asyncio.wait_for(
                client.post(
                    self.graphql_url,
                    json={"query": query, "variables": variables},
                    headers=self._get_headers(),
                ),
                timeout=self.request_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ApiError(
                f"Request cancelled after {self.request_timeout_seconds:.0f}s", code="timeout", original=e
            ) from e
        except httpx.TimeoutException as e:
            raise ApiError(f"Request timed out: {e}", code="timeout", original=e) from e
        except httpx.TransportError as e:
            raise ApiError(f"Network error: {e}", code="network", original=e) from e

        if not response.is_success:
            raise ApiError(
                "Shopify returned a non-success status",
                code="http_status",
                status_code=response.status_code,
                details=response.text[:500],
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ApiError("Response body is not JSON", code="invalid_response", original=e) from e

        errors = payload.get("errors") if isinstance(payload, dict) else None
        if errors:
            if isinstance(errors, list) and _is_throttled(errors):
                raise ApiError("Query cost throttled", code="throttled", details=errors)
            raise ApiError("GraphQL query returned errors", code="graphql_error", details=errors)

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise ApiError("Response has no data", code="invalid_response", details=payload)
        return data
