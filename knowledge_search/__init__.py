"""Hybrid retrieval over chunked knowledge bases."""

__version__ = "0.1.0"
