"""
Error taxonomy shared by the store adapters, managers and HTTP layer.

Every error carries the HTTP status it maps to; ``foodshare.app`` renders
them as ``{"error": message}``.
"""

from __future__ import annotations


class FoodShareError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(FoodShareError):
    status_code = 400
    default_message = "Invalid request"


class Unauthorized(FoodShareError):
    status_code = 401
    default_message = "No token"


class ForbiddenError(FoodShareError):
    status_code = 403
    default_message = "Forbidden"


class NotFoundError(FoodShareError):
    status_code = 404
    default_message = "Not found"


class InternalError(FoodShareError):
    status_code = 500


class DependencyError(FoodShareError):
    """A store or external collaborator failed."""

    status_code = 502
    default_message = "Upstream dependency failed"


class DependencyTimeout(DependencyError):
    status_code = 504
    default_message = "Upstream dependency timed out"


class DuplicateKeyError(FoodShareError):
    """Raised by store adapters when a unique key is already taken."""

    status_code = 400
    default_message = "Duplicate key"
