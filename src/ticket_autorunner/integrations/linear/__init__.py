"""Linear tracker adapter."""

from .client import LinearClient

__all__ = ["LinearClient"]
