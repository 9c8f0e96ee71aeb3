"""
Configuration management for the cohort sync pipeline
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Pipeline settings"""

    # Application
    app_name: str = "Cohort Sync"
    environment: str = "development"
    log_level: str = "INFO"
    log_to_file: bool = False
    log_dir: str = "logs"

    # Database (sink)
    database_url: str = "sqlite:///./cohort_sync.db"
    db_schema: Optional[str] = None  # e.g. "production" on Postgres

    # Shopify Admin GraphQL
    shopify_store_domain: str = ""
    shopify_access_token: str = ""
    shopify_api_version: str = "2024-07"
    shopify_page_size: int = 250
    shopify_page_delay_seconds: float = 0.5  # Throttle between pages
    shopify_request_timeout_seconds: float = 45.0
    shopify_max_retries: int = 5
    shopify_retry_base_delay: float = 2.0
    shopify_retry_max_delay: float = 30.0

    # Batch writer
    batch_size: int = 50
    db_max_attempts: int = 3
    db_retry_base_delay: float = 1.0
    id_map_page_size: int = 1000

    # Downstream routines (best-effort)
    classify_function: str = "classify_new_customers"
    refresh_function: str = "refresh_cohort_aggregates"
    classify_timeout_seconds: float = 60.0
    refresh_timeout_seconds: float = 120.0

    # Periods
    sync_timezone: str = "Asia/Hong_Kong"
    first_sync_period: str = "2021-01"

    # Validation
    reference_data_path: Optional[str] = "data/reference_counts.json"
    completion_tolerance: float = 0.95

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
