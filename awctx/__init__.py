"""Layered activity memory and context enrichment for ActivityWatch."""

__version__ = "0.1.0"
