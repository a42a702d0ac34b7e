"""Aggregation over encrypted feedback records."""
