"""Tests for the default role chain created by the seed script."""
import pytest

from gatekeeper.features.permissions.resolver import PermissionResolver
from scripts.seed_permissions import DEFAULT_PERMISSIONS, seed_permissions, seed_roles


class TestSeedRoles:
    @pytest.mark.asyncio
    async def test_chain_runs_from_user_down_to_super_admin(self, db, clock):
        roles_map = await seed_roles(db, await seed_permissions(db))
        parents = {name: role.parent_role_id for name, role in roles_map.items()}
        assert parents == {
            "user": None,
            "employee": roles_map["user"].id,
            "manager": roles_map["employee"].id,
            "super_admin": roles_map["manager"].id,
        }
        assert roles_map["user"].is_default

        resolver = PermissionResolver(db, clock)
        everything = {f"{module}.{action}" for module, action, *_ in DEFAULT_PERMISSIONS}
        super_admin = await resolver.resolve_for_role(roles_map["super_admin"].id)
        assert {p.permission for p in super_admin} == everything
        user = await resolver.resolve_for_role(roles_map["user"].id)
        assert [p.permission for p in user] == ["reports.read"]

    @pytest.mark.asyncio
    async def test_seeding_twice_is_harmless(self, db):
        first = await seed_roles(db, await seed_permissions(db))
        first_ids = {name: role.id for name, role in first.items()}
        again = await seed_roles(db, await seed_permissions(db))
        assert {name: role.id for name, role in again.items()} == first_ids
