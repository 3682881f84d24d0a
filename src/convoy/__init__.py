"""Convoy - chat bridge for agent CLIs and HTTP models."""

__version__ = "0.1.0"
