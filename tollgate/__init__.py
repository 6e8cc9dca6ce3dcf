"""Tollgate - metering reverse proxy for AI completion providers."""

__version__ = "0.4.0"
