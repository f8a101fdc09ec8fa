"""
Seed script to populate the permission catalog and platform roles.

Run this script after deploying a new catalog to:
- Sync catalog permissions into the permissions table
- Create missing platform system roles
- Optionally provision a platform superadmin
- Optionally seed the default roles of an institute

Usage:
    python -m scripts.seed_rbac
    python -m scripts.seed_rbac --superadmin-email admin@example.com
    python -m scripts.seed_rbac --institute-id 01J...
"""
import argparse
import asyncio
import os
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from institute_rbac.core.database.engine import AsyncSessionLocal, init_db
from institute_rbac.features.permissions.catalog import sync_permission_catalog
from institute_rbac.features.permissions.defaults import (
    DEFAULT_INSTITUTE_ROLES,
    PLATFORM_SYSTEM_ROLES,
    initialize_institute_roles,
    seed_platform_roles,
)
from institute_rbac.features.permissions.exceptions import DuplicateKey
from institute_rbac.features.users.models import User
from institute_rbac.utils import get_logger


log = get_logger(__name__)


async def ensure_superadmin(db: AsyncSession, email: str, name: str) -> User:
    """Create the superadmin user, or promote an existing user with that email."""
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalars().first()

    if user is None:
        user = User(email=email, name=name, is_admin=True)
        db.add(user)
        log.info("Created superadmin %s", email)
    elif not user.is_admin:
        user.is_admin = True
        log.info("Promoted %s to superadmin", email)
    else:
        log.debug("Superadmin '%s' already exists, skipping", email)

    await db.flush()
    return user


async def main(superadmin_email: Optional[str] = None, institute_id: Optional[str] = None):
    """Main function to seed the catalog and roles."""
    log.info("Starting RBAC seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    async with AsyncSessionLocal() as db:
        try:
            permissions = await sync_permission_catalog(db)
            log.info("Catalog holds %d permissions", len(permissions))

            created = await seed_platform_roles(db)
            log.info("Created %d of %d platform roles", len(created), len(PLATFORM_SYSTEM_ROLES))

            if superadmin_email:
                await ensure_superadmin(db, superadmin_email, name="Superadmin")

            if institute_id:
                try:
                    await initialize_institute_roles(db, institute_id)
                    log.info("Default institute roles created:")
                    for definition in DEFAULT_INSTITUTE_ROLES:
                        log.info("  - %s: %s", definition.key, definition.description)
                except DuplicateKey as exc:
                    log.warning("Institute %s already has default roles (%s), skipping", institute_id, exc.key)

            await db.commit()
        except Exception as e:
            log.error("Error seeding RBAC data: %s", e, exc_info=True)
            await db.rollback()
            raise

    log.info("RBAC seeding completed successfully!")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the RBAC permission catalog and system roles")
    parser.add_argument("--superadmin-email", default=os.environ.get("SUPERADMIN_EMAIL"))
    parser.add_argument("--institute-id", default=None)
    args = parser.parse_args()
    asyncio.run(main(args.superadmin_email, args.institute_id))
