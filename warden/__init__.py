"""Warden: taint-tracking security proxy for LLM provider traffic."""

__version__ = "0.1.0"
