"""Trace records and tree reconstruction."""
