"""Tests for user-role bindings."""
from datetime import timedelta

import pytest
from sqlalchemy import select

from gatekeeper.core.exceptions import (
    CapacityExceededError,
    ConflictError,
    ExpiredError,
    InvalidRequestError,
    NotFoundError,
)
from gatekeeper.features.roles.models import Role
from gatekeeper.features.roles.schemas import RoleUpdate
from gatekeeper.features.user_roles.models import UserRole


async def user_count(db, role_id) -> int:
    result = await db.execute(
        select(Role.user_count).where(Role.id == role_id)
    )
    return result.scalar_one()


async def primary_role_id(bindings, user_id):
    role = await bindings.get_primary_role(user_id)
    return role.id if role else None


class TestAssignRole:
    @pytest.mark.asyncio
    async def test_first_binding_becomes_primary(self, db, bindings, make_role, make_user):
        role = await make_role("editor")
        user = await make_user()
        binding = await bindings.assign_role(user.id, role.id, assigned_by="admin-1", reason="onboarding")
        assert binding.is_primary
        assert binding.assignment_reason == "onboarding"
        assert await user_count(db, role.id) == 1

    @pytest.mark.asyncio
    async def test_duplicate_binding_conflicts(self, bindings, make_role, make_user):
        role = await make_role("editor")
        user = await make_user()
        role_id, user_id = role.id, user.id
        await bindings.assign_role(user_id, role_id)
        with pytest.raises(ConflictError):
            await bindings.assign_role(user_id, role_id)

    @pytest.mark.asyncio
    async def test_unknown_user(self, bindings, make_role):
        role = await make_role("editor")
        with pytest.raises(NotFoundError):
            await bindings.assign_role("missing-user", role.id)

    @pytest.mark.asyncio
    async def test_inactive_role_is_rejected(self, roles, bindings, make_role, make_user):
        role = await make_role("editor")
        user = await make_user()
        role_id, user_id = role.id, user.id
        await roles.update_role(role_id, RoleUpdate(is_active=False))
        with pytest.raises(InvalidRequestError):
            await bindings.assign_role(user_id, role_id)

    @pytest.mark.asyncio
    async def test_past_expiry_is_rejected(self, bindings, clock, make_role, make_user):
        role = await make_role("editor")
        user = await make_user()
        with pytest.raises(ExpiredError):
            await bindings.assign_role(user.id, role.id, expires_at=clock.now())

    @pytest.mark.asyncio
    async def test_max_users_is_enforced(self, db, bindings, make_role, make_user):
        role = await make_role("limited", max_users=1)
        first = await make_user(email="first@example.com")
        second = await make_user(email="second@example.com")
        role_id, second_id = role.id, second.id
        await bindings.assign_role(first.id, role_id)
        with pytest.raises(CapacityExceededError):
            await bindings.assign_role(second_id, role_id)
        assert await user_count(db, role_id) == 1

    @pytest.mark.asyncio
    async def test_explicit_primary_moves_flag(self, bindings, clock, make_role, make_user):
        first = await make_role("first_role")
        second = await make_role("second_role")
        user = await make_user()
        user_id, first_id, second_id = user.id, first.id, second.id
        await bindings.assign_role(user_id, first_id)
        clock.advance(seconds=1)
        await bindings.assign_role(user_id, second_id, is_primary=True)
        assert await primary_role_id(bindings, user_id) == second_id


class TestRevokeRole:
    @pytest.mark.asyncio
    async def test_revoke_decrements_count(self, db, bindings, make_role, make_user):
        role = await make_role("editor")
        user = await make_user()
        role_id, user_id = role.id, user.id
        await bindings.assign_role(user_id, role_id)
        binding = await bindings.revoke_role(user_id, role_id, revoked_by="admin-1", reason="left team")
        assert not binding.is_active
        assert binding.revocation_reason == "left team"
        assert await user_count(db, role_id) == 0

    @pytest.mark.asyncio
    async def test_revoke_missing_binding(self, bindings, make_role, make_user):
        role = await make_role("editor")
        user = await make_user()
        with pytest.raises(NotFoundError):
            await bindings.revoke_role(user.id, role.id)

    @pytest.mark.asyncio
    async def test_revoking_primary_promotes_earliest(self, bindings, clock, make_role, make_user):
        first = await make_role("first_role")
        second = await make_role("second_role")
        third = await make_role("third_role")
        user = await make_user()
        user_id = user.id
        ids = [first.id, second.id, third.id]
        for role_id in ids:
            await bindings.assign_role(user_id, role_id)
            clock.advance(seconds=1)

        await bindings.revoke_role(user_id, ids[0])
        assert await primary_role_id(bindings, user_id) == ids[1]

    @pytest.mark.asyncio
    async def test_reassign_reuses_row(self, db, bindings, make_role, make_user):
        role = await make_role("editor")
        user = await make_user()
        role_id, user_id = role.id, user.id
        first = await bindings.assign_role(user_id, role_id)
        first_id = first.id
        await bindings.revoke_role(user_id, role_id)
        again = await bindings.assign_role(user_id, role_id)
        assert again.id == first_id
        result = await db.execute(select(UserRole).where(UserRole.user_id == user_id))
        assert len(result.scalars().all()) == 1


class TestPrimaryRole:
    @pytest.mark.asyncio
    async def test_set_primary_requires_active_binding(self, bindings, make_role, make_user):
        role = await make_role("editor")
        user = await make_user()
        with pytest.raises(NotFoundError):
            await bindings.set_primary_role(user.id, role.id)

    @pytest.mark.asyncio
    async def test_exactly_one_primary(self, db, bindings, clock, make_role, make_user):
        first = await make_role("first_role")
        second = await make_role("second_role")
        user = await make_user()
        user_id, first_id, second_id = user.id, first.id, second.id
        await bindings.assign_role(user_id, first_id)
        clock.advance(seconds=1)
        await bindings.assign_role(user_id, second_id)
        await bindings.set_primary_role(user_id, second_id)

        result = await db.execute(
            select(UserRole.role_id).where(UserRole.user_id == user_id, UserRole.is_primary.is_(True))
        )
        assert result.scalars().all() == [second_id]


class TestTransferRoles:
    @pytest.mark.asyncio
    async def test_transfer_moves_bindings(self, db, bindings, clock, make_role, make_user):
        editor = await make_role("editor")
        viewer = await make_role("viewer")
        source = await make_user(email="source@example.com")
        target = await make_user(email="target@example.com")
        ids = dict(editor=editor.id, viewer=viewer.id, source=source.id, target=target.id)
        await bindings.assign_role(ids["source"], ids["editor"])
        clock.advance(seconds=1)
        await bindings.assign_role(ids["source"], ids["viewer"])
        await bindings.assign_role(ids["target"], ids["viewer"])

        outcome = await bindings.transfer_roles(ids["source"], ids["target"], transferred_by="admin-1")
        assert outcome == {"transferred": [ids["editor"]], "skipped": [ids["viewer"]]}
        assert await bindings.active_role_ids(ids["source"]) == []
        assert sorted(await bindings.active_role_ids(ids["target"])) == sorted([ids["editor"], ids["viewer"]])
        assert await user_count(db, ids["viewer"]) == 1
        assert await user_count(db, ids["editor"]) == 1

    @pytest.mark.asyncio
    async def test_transfer_to_same_user_is_rejected(self, bindings, make_user):
        user = await make_user()
        with pytest.raises(InvalidRequestError):
            await bindings.transfer_roles(user.id, user.id)

    @pytest.mark.asyncio
    async def test_transfer_without_roles(self, bindings, make_user):
        source = await make_user(email="source@example.com")
        target = await make_user(email="target@example.com")
        with pytest.raises(NotFoundError):
            await bindings.transfer_roles(source.id, target.id)


class TestDefaultsAndExpiry:
    @pytest.mark.asyncio
    async def test_default_role_assignment(self, bindings, make_role, make_user):
        await make_role("member", is_default=True)
        user = await make_user()
        binding = await bindings.assign_default_role(user.id)
        assert binding is not None and binding.is_primary
        again = await bindings.assign_default_role(user.id)
        assert again.id == binding.id

    @pytest.mark.asyncio
    async def test_no_default_role(self, bindings, make_user):
        user = await make_user()
        assert await bindings.assign_default_role(user.id) is None

    @pytest.mark.asyncio
    async def test_cleanup_expired_bindings(self, db, bindings, clock, make_role, make_user):
        temp = await make_role("temp_role")
        perm = await make_role("perm_role")
        user = await make_user()
        user_id, temp_id, perm_id = user.id, temp.id, perm.id
        await bindings.assign_role(user_id, temp_id, expires_at=clock.now() + timedelta(hours=1))
        clock.advance(seconds=1)
        await bindings.assign_role(user_id, perm_id)

        clock.advance(hours=2)
        assert await bindings.cleanup_expired_bindings() == 1
        assert await bindings.active_role_ids(user_id) == [perm_id]
        assert await primary_role_id(bindings, user_id) == perm_id
        assert await user_count(db, temp_id) == 0

    @pytest.mark.asyncio
    async def test_listing_and_statistics(self, bindings, make_role, make_user):
        role = await make_role("editor")
        user = await make_user()
        await bindings.assign_role(user.id, role.id)
        [detail] = await bindings.get_user_roles(user.id)
        assert detail["role_name"] == "editor"
        assert detail["is_primary"]

        stats = await bindings.statistics()
        assert stats["active"] == 1
        assert stats["primary"] == 1
        assert stats["users_with_roles"] == 1
        assert stats["by_role"] == {"editor": 1}
