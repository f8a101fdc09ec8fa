"""
Permission evaluation.

Pure decision functions over an effective permission set and the full-access
flag. No I/O and no state: the same inputs always give the same answer.
"""
from typing import AbstractSet, Iterable, Union

PermissionQuery = Union[str, Iterable[str]]


def _as_keys(required: PermissionQuery) -> tuple[str, ...]:
    if isinstance(required, str):
        return (required,)
    return tuple(required)


def has_permission(granted: AbstractSet[str], full_access: bool, required: PermissionQuery) -> bool:
    """
    True if every required key is granted (AND).

    A single key is a one-element query. Full access grants any query,
    including empty ones and keys the catalog does not know. Without full
    access an empty query is vacuously satisfied.
    """
    if full_access:
        return True
    return all(key in granted for key in _as_keys(required))


def has_any_permission(granted: AbstractSet[str], full_access: bool, required: PermissionQuery) -> bool:
    """True if at least one required key is granted (OR). An empty query grants nothing."""
    if full_access:
        return True
    return any(key in granted for key in _as_keys(required))
