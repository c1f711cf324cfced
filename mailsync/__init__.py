"""Multi-provider mail ingestion, threading and sync."""

__version__ = "1.0.0"
