"""Catalog synchronization pipeline: provider catalog -> canonical products."""

__version__ = "0.1.0"
