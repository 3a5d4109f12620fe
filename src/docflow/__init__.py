"""Docflow - incremental chat-to-documentation proposal pipeline."""

__version__ = "0.1.0"
