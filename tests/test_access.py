"""Access query facade tests."""

from __future__ import annotations

import logging

import pytest
from sqlalchemy.exc import OperationalError

from institute_rbac.features.permissions import access as access_facade, assignments, roles
from institute_rbac.features.permissions.access import AccessCache, authorize, resolve_actor_access
from institute_rbac.features.permissions.catalog import catalog
from institute_rbac.features.permissions.exceptions import NoAssignment, NotFound
from institute_rbac.features.users.models import User


async def _teacher_in(db, institute_id, user_id):
    role = await roles.create_role(
        db,
        institute_id=institute_id,
        name="Teacher",
        key="class_teacher",
        description=None,
        permission_keys=["students.view", "students.manage", "attendance.mark"],
    )
    await assignments.set_assignment(db, user_id, institute_id, role.id)
    await db.commit()
    return role


@pytest.mark.asyncio
async def test_permissions_follow_the_institute(db, make_institute, make_user) -> None:
    s1 = await make_institute("S1")
    s2 = await make_institute("S2")
    actor = await make_user("Teacher A")
    await _teacher_in(db, s1.id, actor.id)

    assert await authorize(db, actor.id, s1.id, "students.manage")
    assert not await authorize(db, actor.id, s1.id, "roles.manage")
    assert not await authorize(db, actor.id, s2.id, "students.view")

    with pytest.raises(NoAssignment):
        await resolve_actor_access(db, actor.id, s2.id)


@pytest.mark.asyncio
async def test_resolve_reports_role_and_keys(db, make_institute, make_user) -> None:
    institute = await make_institute()
    actor = await make_user()
    role = await _teacher_in(db, institute.id, actor.id)

    access = await resolve_actor_access(db, actor.id, institute.id)

    assert access.permission_keys == {"students.view", "students.manage", "attendance.mark"}
    assert access.role.id == role.id
    assert access.role.key == "class_teacher"
    assert not access.full_access
    assert access.has_any_permission(["roles.manage", "attendance.mark"])
    assert not access.has_permission(["roles.manage", "attendance.mark"])


@pytest.mark.asyncio
async def test_superadmin_has_full_access_without_assignment(db, make_institute, make_user) -> None:
    institute = await make_institute()
    superadmin = await make_user("Super", is_admin=True)

    access = await resolve_actor_access(db, superadmin.id, institute.id)

    assert access.full_access
    assert access.role is None
    assert access.permission_keys == catalog.keys()
    assert await authorize(db, superadmin.id, institute.id, ["roles.manage", "not.a.catalog.key"])
    assert await authorize(db, superadmin.id, None, "settings.manage")


@pytest.mark.asyncio
async def test_owner_admin_has_full_access_only_in_their_institute(db, make_institute, make_user) -> None:
    owner = await make_user("Owner")
    owned = await make_institute("Owned", admin_user_id=owner.id)
    elsewhere = await make_institute("Elsewhere")

    assert await authorize(db, owner.id, owned.id, "roles.manage")
    assert not await authorize(db, owner.id, elsewhere.id, "dashboard.view")
    assert not await authorize(db, owner.id, None, "dashboard.view")


@pytest.mark.asyncio
async def test_inactive_role_grants_nothing(db, make_institute, make_user) -> None:
    institute = await make_institute()
    actor = await make_user()
    role = await _teacher_in(db, institute.id, actor.id)
    await roles.update_role(db, role.id, {"is_active": False})
    await db.commit()

    access = await resolve_actor_access(db, actor.id, institute.id)

    assert access.permission_keys == frozenset()
    assert access.role.is_active is False
    assert not await authorize(db, actor.id, institute.id, "students.view")


@pytest.mark.asyncio
async def test_role_changes_apply_on_next_check(session_factory, make_institute, make_user) -> None:
    institute = await make_institute()
    actor = await make_user()
    async with session_factory() as setup:
        role = await _teacher_in(setup, institute.id, actor.id)

    async with session_factory() as reader:
        assert await authorize(reader, actor.id, institute.id, "students.manage")

        async with session_factory() as writer:
            await roles.update_role(writer, role.id, {"permission_keys": ["students.view"]})
            await writer.commit()

        assert not await authorize(reader, actor.id, institute.id, "students.manage")
        assert await authorize(reader, actor.id, institute.id, "students.view")


@pytest.mark.asyncio
async def test_deactivated_actor_is_denied(db, make_institute, make_user) -> None:
    institute = await make_institute()
    actor = await make_user()
    await _teacher_in(db, institute.id, actor.id)

    user = await db.get(User, actor.id)
    user.is_active = False
    await db.commit()

    with pytest.raises(NotFound):
        await resolve_actor_access(db, actor.id, institute.id)
    assert not await authorize(db, actor.id, institute.id, "students.view")


@pytest.mark.asyncio
async def test_denials_are_logged(db, make_institute, make_user, caplog) -> None:
    institute = await make_institute()
    actor = await make_user()

    with caplog.at_level(logging.INFO, logger="institute_rbac"):
        assert not await authorize(db, actor.id, institute.id, "students.view")

    assert "no_assignment" in caplog.text


@pytest.mark.asyncio
async def test_platform_scope_assignment(db, make_user) -> None:
    actor = await make_user()
    auditor = next(role for role in await roles.list_roles(db, None) if role.key == "platform_auditor")
    await assignments.set_assignment(db, actor.id, None, auditor.id)
    await db.commit()

    assert await authorize(db, actor.id, None, ["roles.view", "reports.view"])
    assert not await authorize(db, actor.id, None, "roles.manage")


@pytest.mark.asyncio
async def test_access_cache_only_changes_on_refresh(session_factory, make_institute, make_user) -> None:
    institute = await make_institute()
    actor = await make_user()
    async with session_factory() as setup:
        role = await _teacher_in(setup, institute.id, actor.id)

    cache = AccessCache(session_factory, actor.id, institute.id)
    assert cache.snapshot is None
    assert not cache.has_permission("students.view")

    await cache.refresh()
    assert cache.has_permission("students.manage")
    assert cache.role.key == "class_teacher"
    assert not cache.full_access

    async with session_factory() as writer:
        await roles.update_role(writer, role.id, {"permission_keys": ["students.view"]})
        await writer.commit()

    assert cache.has_permission("students.manage")
    await cache.refresh()
    assert not cache.has_permission("students.manage")
    assert cache.has_any_permission(["students.manage", "students.view"])


@pytest.mark.asyncio
async def test_access_cache_without_role_is_empty(session_factory, make_institute, make_user) -> None:
    institute = await make_institute()
    actor = await make_user()

    cache = AccessCache(session_factory, actor.id, institute.id)

    assert await cache.refresh() is None
    assert cache.permissions == frozenset()
    assert cache.role is None
    assert not cache.has_any_permission(["students.view"])


def _broken_lookup(*_args, **_kwargs):
    raise OperationalError("SELECT role_assignments", {}, Exception("disk I/O error"))


@pytest.mark.asyncio
async def test_database_fault_is_raised_not_denied(db, make_institute, make_user, monkeypatch) -> None:
    institute = await make_institute()
    actor = await make_user()
    await _teacher_in(db, institute.id, actor.id)
    monkeypatch.setattr(access_facade, "get_assignment", _broken_lookup)

    with pytest.raises(OperationalError):
        await authorize(db, actor.id, institute.id, "students.view")
