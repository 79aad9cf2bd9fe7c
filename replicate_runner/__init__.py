"""Replicate media-generation job runner."""

__version__ = "0.1.0"
