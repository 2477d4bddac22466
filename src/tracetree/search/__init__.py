"""Elasticsearch record source and document decoding."""
