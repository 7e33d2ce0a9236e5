"""Deals Ingestor - incremental deals synchronization."""

__version__ = "1.0.0"
