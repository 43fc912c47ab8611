"""
Core modules for AI Spend Meter.

This package contains the ingestion pipeline: record parsing, pricing
resolution, incremental ingestion and spend aggregation.
"""
