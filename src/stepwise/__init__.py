"""Deterministic, resumable execution of declarative code-generation plans."""

__version__ = "0.1.0"

__all__ = ["__version__"]
