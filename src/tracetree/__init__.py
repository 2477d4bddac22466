"""Rebuild and print APM trace call trees from Elasticsearch."""

__version__ = "0.1.0"
