"""Embedding index and similarity search worker for the Marginalia annotation manager."""

__version__ = "0.1.0"
