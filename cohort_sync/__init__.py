"""Shopify order sync and cohort retention pipeline"""

__version__ = "0.1.0"
