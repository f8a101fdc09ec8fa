"""Shared pytest fixtures for RBAC tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from institute_rbac.core.database.engine import build_engine, build_sessionmaker, get_db, init_db
from institute_rbac.features.institutes.models import Institute
from institute_rbac.features.permissions.catalog import sync_permission_catalog
from institute_rbac.features.permissions.defaults import seed_platform_roles
from institute_rbac.features.users.auth import create_access_token
from institute_rbac.features.users.models import User
from institute_rbac.main import app as rbac_app


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite database per test, with the schema and catalog in place."""

    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'rbac.sqlite'}")
    await init_db(bind=test_engine)

    async with build_sessionmaker(test_engine)() as session:
        await sync_permission_catalog(session)
        await seed_platform_roles(session)
        await session.commit()

    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(engine)


@pytest_asyncio.fixture()
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def make_user(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[User]]:
    """Create and commit a user in its own session."""

    counter = 0

    async def _make(name: str = "Actor", is_admin: bool = False, **fields) -> User:
        nonlocal counter
        counter += 1
        async with session_factory() as session:
            user = User(
                email=f"{name.lower().replace(' ', '.')}.{counter}@example.com",
                name=name,
                is_admin=is_admin,
                **fields,
            )
            session.add(user)
            await session.commit()
            return user

    return _make


@pytest_asyncio.fixture()
async def make_institute(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Institute]]:
    async def _make(name: str = "Institute", admin_user_id: str | None = None) -> Institute:
        async with session_factory() as session:
            institute = Institute(name=name, admin_user_id=admin_user_id)
            session.add(institute)
            await session.commit()
            return institute

    return _make


@pytest.fixture()
def auth_headers() -> Callable[[User], dict[str, str]]:
    """Bearer headers for a user."""

    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _headers


@pytest_asyncio.fixture()
async def app(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[FastAPI]:
    """The application with ``get_db`` bound to the per-test database."""

    async def _get_test_db() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    rbac_app.dependency_overrides[get_db] = _get_test_db
    yield rbac_app
    rbac_app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def async_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    """Provide an HTTPX async client bound to the FastAPI app."""

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
