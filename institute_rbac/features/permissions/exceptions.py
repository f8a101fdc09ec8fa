"""
Error taxonomy of the RBAC engine.

Every error carries the HTTP status and machine code the API reports, so the
exception handler in ``main`` can render them without a lookup table.
Persistence faults are deliberately not part of this hierarchy.
"""
from typing import Any, Iterable, Optional

from fastapi import status


class RbacError(Exception):
    """Base class for all authorization engine errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "rbac_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.extra}


class UnknownPermission(RbacError):
    status_code = 422
    code = "unknown_permission"

    def __init__(self, keys: Iterable[str]):
        self.keys = sorted(set(keys))
        super().__init__(
            f"Unknown permission(s): {', '.join(self.keys)}",
            permissions=self.keys,
        )


class DuplicateKey(RbacError):
    status_code = status.HTTP_409_CONFLICT
    code = "duplicate_key"

    def __init__(self, key: str, institute_id: Optional[str]):
        self.key = key
        self.institute_id = institute_id
        super().__init__(
            f"Role with key '{key}' already exists in this scope",
            key=key,
            institute_id=institute_id,
        )


class EmptyPermissionSet(RbacError):
    status_code = 422
    code = "empty_permission_set"

    def __init__(self):
        super().__init__("A role must grant at least one permission")


class SystemRoleImmutable(RbacError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "system_role_immutable"

    def __init__(self, role_id: str, fields: Iterable[str] = ()):
        self.role_id = role_id
        self.fields = sorted(fields)
        if self.fields:
            message = f"Cannot modify {', '.join(self.fields)} of a system role"
        else:
            message = "Cannot delete a system role"
        super().__init__(message, role_id=role_id, fields=self.fields)


class RoleInUse(RbacError):
    status_code = status.HTTP_409_CONFLICT
    code = "role_in_use"

    def __init__(self, role_id: str, assignment_count: int):
        self.role_id = role_id
        self.assignment_count = assignment_count
        super().__init__(
            "Cannot delete role that is assigned to users",
            role_id=role_id,
            assignment_count=assignment_count,
        )


class NoAssignment(RbacError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "no_assignment"

    def __init__(self, user_id: str, institute_id: Optional[str]):
        self.user_id = user_id
        self.institute_id = institute_id
        super().__init__("User has no role in this scope")


class ConcurrentModification(RbacError):
    status_code = status.HTTP_409_CONFLICT
    code = "concurrent_modification"

    def __init__(self, resource_type: str, resource_id: Optional[str], current_version: Optional[int] = None):
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.current_version = current_version
        super().__init__(
            f"The {resource_type} was modified concurrently; re-read it and retry",
            resource_id=resource_id,
            current_version=current_version,
        )


class Forbidden(RbacError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"

    def __init__(self, required: Iterable[str]):
        self.required = list(required)
        super().__init__(
            f"Permission denied: requires {', '.join(self.required)}",
            required=self.required,
        )


class NotFound(RbacError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"

    def __init__(self, resource_type: str, resource_id: Optional[str]):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type.capitalize()} not found", resource_id=resource_id)
