"""API middleware package."""

from src.membership_sync.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
