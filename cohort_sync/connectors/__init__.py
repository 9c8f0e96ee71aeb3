"""Data connectors for the cohort sync pipeline"""

from cohort_sync.connectors.shopify_graphql import ShopifyGraphQLClient

__all__ = [
    "ShopifyGraphQLClient",
]
