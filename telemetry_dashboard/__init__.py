"""Telemetry aggregation dashboard."""
