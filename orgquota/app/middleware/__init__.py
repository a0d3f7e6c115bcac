"""Middleware package for the quota ledger."""

from orgquota.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RequestIdMiddleware",
    "get_request_id",
]
