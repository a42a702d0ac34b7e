"""Confidential feedback collection with aggregation over encrypted values."""
