"""
Settings and the from_settings factories.
"""
from cohort_sync.config import Settings
from cohort_sync.connectors.shopify_graphql import ShopifyGraphQLClient
from cohort_sync.services.writer import BatchUpsertWriter


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.batch_size == 50
    assert settings.shopify_max_retries == 5
    assert settings.shopify_page_delay_seconds == 0.5
    assert settings.sync_timezone == "Asia/Hong_Kong"
    assert settings.completion_tolerance == 0.95


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SHOPIFY_MAX_RETRIES", "2")
    monkeypatch.setenv("batch_size", "10")
    settings = Settings(_env_file=None)
    assert settings.shopify_max_retries == 2
    assert settings.batch_size == 10


def test_client_from_settings():
    settings = Settings(
        _env_file=None,
        shopify_store_domain="shop.myshopify.com",
        shopify_access_token="tok",
        shopify_max_retries=4,
    )
    client = ShopifyGraphQLClient.from_settings(settings)

    assert client.graphql_url == "https://shop.myshopify.com/admin/api/2024-07/graphql.json"
    assert client.retry_policy.max_attempts == 5
    assert client.retry_policy.base_delay == 2.0
    assert client.retry_policy.max_delay == 30.0


def test_writer_from_settings(fake_sink):
    settings = Settings(_env_file=None, batch_size=25, db_max_attempts=3)
    writer = BatchUpsertWriter.from_settings(settings, fake_sink)

    assert writer.batch_size == 25
    assert writer.retry_policy.max_attempts == 3
    assert writer.retry_policy.base_delay == 1.0
