"""Claimflow API middleware."""

from claimflow.api.middleware.request_id import RequestIdMiddleware

__all__ = ["RequestIdMiddleware"]
