"""
RBAC error taxonomy.

Each error carries a status_code hint for the HTTP layer; the core itself
never formats responses.
"""

from typing import Any, Optional


class RBACError(Exception):
    """Base class for access-control errors."""

    status_code: int = 400
    kind: str = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class NotFoundError(RBACError):
    """Referenced user, role or permission code does not exist."""

    status_code = 404
    kind = "not_found"

    def __init__(self, entity: str, identifier: Any, message: Optional[str] = None):
        super().__init__(message or f"{entity.capitalize()} '{identifier}' not found")
        self.entity = entity
        self.identifier = identifier

    def to_dict(self) -> dict:
        data = super().to_dict()
        data[self.entity] = str(self.identifier)
        return data


class ForbiddenError(RBACError):
    """Caller's scope or permissions do not cover the requested target."""

    status_code = 403
    kind = "forbidden"

    def __init__(self, message: str, required_permission: Optional[str] = None):
        super().__init__(message)
        self.required_permission = required_permission

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.required_permission:
            data["required_permission"] = self.required_permission
        return data


class ConflictError(RBACError):
    """Mutation precondition violated (e.g. revoking a permission not held)."""

    status_code = 409
    kind = "conflict"


class StoreFailureError(RBACError):
    """Persistence call failed. Not retried here."""

    status_code = 503
    kind = "store_failure"
