"""Retrieval-augmented document summarization core."""

__version__ = "1.0.0"
