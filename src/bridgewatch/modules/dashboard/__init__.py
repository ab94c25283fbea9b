"""HTTP surfaces exposing the status view."""

from .status_api import StatusApi

__all__ = ["StatusApi"]
