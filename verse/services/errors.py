"""
verse.services.errors — Domain errors raised by the service layer
==================================================================

Services raise these; ``verse.api.main`` turns them into ``{"message": …}``
JSON responses carrying :attr:`ServiceError.status_code`.
"""

from __future__ import annotations


class ServiceError(Exception):
    """A request that breaks a domain rule (bad input, insufficient balance,
    duplicate vote, …).  Defaults to HTTP 400."""

    status_code = 400

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(ServiceError):
    status_code = 404


class ForbiddenError(ServiceError):
    status_code = 403
