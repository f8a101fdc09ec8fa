"""Permission catalog tests."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from institute_rbac.features.permissions.catalog import (
    PERMISSION_DEFINITIONS,
    PermissionCatalog,
    PermissionDefinition,
    catalog,
    sync_permission_catalog,
)
from institute_rbac.features.permissions.exceptions import UnknownPermission
from institute_rbac.features.permissions.models import Permission


def test_list_permissions_groups_by_module_in_key_order() -> None:
    grouped = catalog.list_permissions()

    assert list(grouped) == sorted(grouped)
    for module, definitions in grouped.items():
        keys = [definition.key for definition in definitions]
        assert keys == sorted(keys)
        assert all(definition.module == module for definition in definitions)
    assert sum(len(items) for items in grouped.values()) == len(catalog)


def test_exists_and_get() -> None:
    assert catalog.exists("roles.manage")
    assert not catalog.exists("roles.destroy")
    assert catalog.get("students.view").module == "students"
    assert catalog.get("nope") is None


def test_validate_names_every_unknown_key() -> None:
    with pytest.raises(UnknownPermission) as excinfo:
        catalog.validate(["students.view", "zzz.unknown", "aaa.unknown"])

    assert excinfo.value.keys == ["aaa.unknown", "zzz.unknown"]
    assert excinfo.value.to_dict()["error"] == "unknown_permission"


def test_validate_returns_requested_keys() -> None:
    assert catalog.validate(["students.view", "students.view"]) == frozenset({"students.view"})


def test_duplicate_definitions_are_rejected() -> None:
    definition = PermissionDefinition("students.view", "students", "View", "")
    with pytest.raises(ValueError):
        PermissionCatalog([definition, definition])


@pytest.mark.asyncio
async def test_sync_is_append_only(db: AsyncSession) -> None:
    """Syncing a smaller catalog keeps rows of keys it no longer lists."""

    before = (await db.execute(select(func.count()).select_from(Permission))).scalar_one()
    assert before == len(PERMISSION_DEFINITIONS)

    extended = PermissionCatalog(
        [*PERMISSION_DEFINITIONS, PermissionDefinition("fees.collect", "fees", "Collect fees", "")]
    )
    rows = await sync_permission_catalog(db, extended)
    assert "fees.collect" in rows

    await sync_permission_catalog(db, PermissionCatalog(PERMISSION_DEFINITIONS[:3]))
    await db.commit()

    after = (await db.execute(select(func.count()).select_from(Permission))).scalar_one()
    assert after == len(PERMISSION_DEFINITIONS) + 1


@pytest.mark.asyncio
async def test_sync_refreshes_display_fields(db: AsyncSession) -> None:
    renamed = PermissionCatalog(
        [PermissionDefinition("students.view", "students", "See students", "Renamed")]
    )
    rows = await sync_permission_catalog(db, renamed)

    assert rows["students.view"].display_name == "See students"
    assert rows["students.view"].description == "Renamed"
