"""Local AI model cache management and encrypted secret storage."""

__version__ = "0.1.0"