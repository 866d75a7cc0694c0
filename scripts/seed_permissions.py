"""
Seed script to populate default permissions and roles.

Run this script after database initialization to create:
- Default system permissions (the ones the API routes check)
- Default role chain, parent to child: user -> employee -> manager -> super_admin
- Initial role-permission assignments, inherited down the chain
- Optionally an admin user (SEED_ADMIN_EMAIL / SEED_ADMIN_PASSWORD)

Usage:
    python -m scripts.seed_permissions
"""
import asyncio
import os
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.clock import system_clock
from gatekeeper.core.database.engine import AsyncSessionLocal, init_db
from gatekeeper.features.permissions.catalog import PermissionCatalog
from gatekeeper.features.permissions.models import AccessLevel, Permission, PermissionScope
from gatekeeper.features.permissions.schemas import PermissionCreate
from gatekeeper.features.roles.models import Role
from gatekeeper.features.roles.schemas import RoleCreate
from gatekeeper.features.roles.service import RoleManager
from gatekeeper.features.users.credentials import hash_password
from gatekeeper.features.users.models import User
from gatekeeper.utils import get_logger


log = get_logger(__name__)


DEFAULT_PERMISSIONS = [
    # (module, action, access level, scope, description)
    ("permissions", "read", AccessLevel.BASIC, PermissionScope.GLOBAL, "View the permission catalog"),
    ("permissions", "manage", AccessLevel.ADMIN, PermissionScope.GLOBAL, "Create, update and delete permissions"),

    ("roles", "read", AccessLevel.BASIC, PermissionScope.GLOBAL, "View roles and their hierarchy"),
    ("roles", "manage", AccessLevel.ADMIN, PermissionScope.GLOBAL, "Create, update, re-parent and delete roles"),
    ("roles", "assign_permissions", AccessLevel.ADMIN, PermissionScope.GLOBAL, "Grant and revoke role permissions"),

    ("users", "read", AccessLevel.BASIC, PermissionScope.GLOBAL, "View users and their roles"),
    ("users", "assign_roles", AccessLevel.ADVANCED, PermissionScope.GLOBAL, "Assign, revoke and transfer user roles"),

    ("sessions", "read", AccessLevel.ADVANCED, PermissionScope.GLOBAL, "View session statistics"),
    ("sessions", "manage", AccessLevel.ADMIN, PermissionScope.GLOBAL, "Revoke other users' sessions and run cleanup"),

    ("reports", "read", AccessLevel.BASIC, PermissionScope.OWN, "View reports"),
    ("reports", "export", AccessLevel.ADVANCED, PermissionScope.TEAM, "Export reports"),
    ("orders", "create", AccessLevel.BASIC, PermissionScope.OWN, "Create orders"),
    ("orders", "read", AccessLevel.BASIC, PermissionScope.TEAM, "View orders"),
    ("orders", "approve", AccessLevel.ADVANCED, PermissionScope.TEAM, "Approve orders"),
]


# Parents come before children. Grants flow down, so super_admin (the leaf)
# holds everything and user (the root) only the basics
DEFAULT_ROLES = [
    {
        "name": "user",
        "description": "Every registered user",
        "parent": None,
        "is_default": True,
        "permissions": ["reports.read"],
    },
    {
        "name": "employee",
        "description": "Staff member",
        "parent": "user",
        "permissions": ["orders.create", "orders.read", "users.read"],
    },
    {
        "name": "manager",
        "description": "Team manager",
        "parent": "employee",
        "permissions": ["orders.approve", "reports.export", "roles.read", "permissions.read", "sessions.read"],
    },
    {
        "name": "super_admin",
        "description": "Full access to role, permission and session administration",
        "parent": "manager",
        "permissions": [
            "roles.manage", "roles.assign_permissions",
            "permissions.manage", "users.assign_roles", "sessions.manage",
        ],
    },
]


async def seed_permissions(db: AsyncSession) -> dict[str, Permission]:
    """
    Create default permissions.

    Returns:
        Dictionary mapping permission names to Permission objects
    """
    log.info("Creating default permissions...")
    catalog = PermissionCatalog(db, system_clock)
    permissions_map = {}

    for module, action, access_level, scope, description in DEFAULT_PERMISSIONS:
        name = f"{module}.{action}"
        existing = await catalog.get_by_name(name)
        if existing:
            log.debug(f"Permission '{name}' already exists, skipping")
            permissions_map[name] = existing
            continue

        permissions_map[name] = await catalog.create_permission(
            PermissionCreate(
                module=module,
                action=action,
                access_level=access_level,
                scope=scope,
                description=description,
                is_system_permission=True,
            )
        )
        log.info(f"Created permission: {name}")

    log.info(f"Seeded {len(permissions_map)} permissions")
    return permissions_map


async def seed_roles(db: AsyncSession, permissions_map: dict[str, Permission]) -> dict[str, Role]:
    """
    Create default roles and assign permissions.

    Args:
        db: Database session
        permissions_map: Dictionary of permission name -> Permission object
    """
    log.info("Creating default roles...")
    roles = RoleManager(db, system_clock)
    roles_map: dict[str, Role] = {}

    for role_config in DEFAULT_ROLES:
        role_name = role_config["name"]
        result = await db.execute(select(Role).where(Role.name == role_name))
        role = result.scalars().first()

        if role:
            log.debug(f"Role '{role_name}' already exists, skipping creation")
        else:
            parent = roles_map.get(role_config["parent"]) if role_config["parent"] else None
            role = await roles.create_role(
                RoleCreate(
                    name=role_name,
                    description=role_config["description"],
                    parent_role_id=parent.id if parent else None,
                    is_default=role_config.get("is_default", False),
                    is_system_role=True,
                )
            )
            log.info(f"Created role '{role_name}'")
        roles_map[role_name] = role

        wanted = []
        for perm_name in role_config["permissions"]:
            if perm_name in permissions_map:
                wanted.append(permissions_map[perm_name].id)
            else:
                log.warning(f"Permission '{perm_name}' not found for role '{role_name}'")
        outcome = await roles.ledger.bulk_assign_permissions(role.id, wanted)
        log.info(f"Role '{role_name}': {len(outcome['assigned'])} granted, {len(outcome['skipped'])} already present")

    log.info("Default roles created successfully")
    return roles_map


async def seed_admin(db: AsyncSession, roles_map: dict[str, Role]) -> None:
    email = os.environ.get("SEED_ADMIN_EMAIL")
    password = os.environ.get("SEED_ADMIN_PASSWORD")
    if not email or not password:
        return

    result = await db.execute(select(User).where(User.email == email.lower()))
    if result.scalars().first():
        log.debug(f"Admin user '{email}' already exists, skipping")
        return

    admin = User(email=email.lower(), name="Administrator", password_hash=hash_password(password), is_admin=True)
    db.add(admin)
    await db.commit()
    await RoleManager(db, system_clock).bindings.assign_role(
        admin.id, roles_map["super_admin"].id, reason="seeded administrator"
    )
    log.info(f"Created admin user '{email}'")


async def main():
    """Main function to seed permissions and roles."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    async with AsyncSessionLocal() as db:
        try:
            # Seed permissions first
            permissions_map = await seed_permissions(db)

            # Then seed roles with permission assignments
            roles_map = await seed_roles(db, permissions_map)
            await seed_admin(db, roles_map)

            log.info("Permission seeding completed successfully!")
            log.info("")
            log.info("Default roles created:")
            for role_config in DEFAULT_ROLES:
                log.info(f"  - {role_config['name']}: {role_config['description']}")

        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise


if __name__ == "__main__":
    asyncio.run(main())
