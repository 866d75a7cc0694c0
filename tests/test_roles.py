"""Tests for the role hierarchy manager."""
import pytest
import ulid

from gatekeeper.core.database.base import generate_ulid
from gatekeeper.core.exceptions import (
    CapacityExceededError,
    ConflictError,
    DependencyViolationError,
    InvalidRequestError,
    NotFoundError,
)
from gatekeeper.features.roles import hierarchy
from gatekeeper.features.roles.schemas import RoleCreate, RoleUpdate
from gatekeeper.features.roles.service import RoleManager, validate_role_name


class TestRoleNames:
    @pytest.mark.parametrize("name", ["editor", "team_lead", "l2_support"])
    def test_valid_names(self, name):
        assert validate_role_name(name) == name

    @pytest.mark.parametrize("name", ["a", "2fast", "trailing_", "has-dash", "admin", "root"])
    def test_invalid_names(self, name):
        with pytest.raises(InvalidRequestError):
            validate_role_name(name)


class TestRoleCrud:
    @pytest.mark.asyncio
    async def test_create_role_defaults(self, make_role):
        role = await make_role("team_lead")
        assert role.display_name == "Team Lead"
        assert role.user_count == 0
        assert role.is_active
        assert not role.is_default
        assert role.created_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_name_conflicts(self, make_role):
        await make_role("editor")
        with pytest.raises(ConflictError):
            await make_role("Editor")

    @pytest.mark.asyncio
    async def test_only_one_default_role(self, roles, make_role):
        first = await make_role("member", is_default=True)
        second = await make_role("guest_user", is_default=True)
        first_id, second_id = first.id, second.id

        default = await roles.get_default_role()
        assert default.id == second_id
        assert (await roles.get_role(first_id)).is_default is False

    @pytest.mark.asyncio
    async def test_system_role_cannot_be_renamed(self, roles, make_role):
        role = await make_role("operator", is_system_role=True)
        role_id = role.id
        with pytest.raises(ConflictError):
            await roles.update_role(role_id, RoleUpdate(name="operator_two"))
        assert (await roles.get_role(role_id)).name == "operator"

    @pytest.mark.asyncio
    async def test_max_users_below_current_count_is_rejected(self, roles, bindings, make_role, make_user):
        role = await make_role("editor")
        role_id = role.id
        for i in range(2):
            user = await make_user(email=f"user{i}@example.com")
            await bindings.assign_role(user.id, role_id)
        with pytest.raises(CapacityExceededError):
            await roles.update_role(role_id, RoleUpdate(max_users=1))

    @pytest.mark.asyncio
    async def test_list_roles_filters(self, roles, make_role):
        parent = await make_role("staff")
        await make_role("support", parent=parent)
        await make_role("sales", parent=parent)
        await make_role("auditor")

        children = await roles.list_roles(parent_role_id=parent.id)
        assert sorted(r.name for r in children) == ["sales", "support"]
        found = await roles.list_roles(search="aud")
        assert [r.name for r in found] == ["auditor"]


class TestHierarchy:
    @pytest.mark.asyncio
    async def test_ancestor_chain_nearest_first(self, db, make_role):
        a = await make_role("level_a")
        b = await make_role("level_b", parent=a)
        c = await make_role("level_c", parent=b)
        chain = await hierarchy.ancestor_chain(db, c.id, 10)
        assert [r.name for r in chain] == ["level_c", "level_b", "level_a"]

    @pytest.mark.asyncio
    async def test_self_parent_is_rejected(self, roles, make_role):
        role = await make_role("loner")
        with pytest.raises(ConflictError):
            await roles.set_parent(role.id, role.id)

    @pytest.mark.asyncio
    async def test_cycle_is_rejected(self, roles, make_role):
        a = await make_role("level_a")
        b = await make_role("level_b", parent=a)
        c = await make_role("level_c", parent=b)
        a_id, c_id = a.id, c.id
        with pytest.raises(ConflictError):
            await roles.set_parent(a_id, c_id)
        assert (await roles.get_role(a_id)).parent_role_id is None

    @pytest.mark.asyncio
    async def test_depth_limit_on_create(self, db, clock):
        manager = RoleManager(db, clock, max_depth=2)
        a = await manager.create_role(RoleCreate(name="level_a"))
        b = await manager.create_role(RoleCreate(name="level_b", parent_role_id=a.id))
        c = await manager.create_role(RoleCreate(name="level_c", parent_role_id=b.id))
        assert (await manager.get_hierarchy(c.id))["depth"] == 2
        with pytest.raises(ConflictError):
            await manager.create_role(RoleCreate(name="level_d", parent_role_id=c.id))

    @pytest.mark.asyncio
    async def test_depth_limit_counts_moved_subtree(self, db, clock):
        manager = RoleManager(db, clock, max_depth=3)
        a = await manager.create_role(RoleCreate(name="level_a"))
        b = await manager.create_role(RoleCreate(name="level_b", parent_role_id=a.id))
        x = await manager.create_role(RoleCreate(name="top_x"))
        y = await manager.create_role(RoleCreate(name="mid_y", parent_role_id=x.id))
        await manager.create_role(RoleCreate(name="leaf_z", parent_role_id=y.id))
        b_id, x_id = b.id, x.id
        # x (height 2) under b (depth 1) would put leaf_z at depth 4
        with pytest.raises(ConflictError):
            await manager.set_parent(x_id, b_id)

    @pytest.mark.asyncio
    async def test_get_hierarchy(self, roles, make_role):
        a = await make_role("level_a")
        b = await make_role("level_b", parent=a)
        await make_role("level_c1", parent=b)
        await make_role("level_c2", parent=b)
        view = await roles.get_hierarchy(b.id)
        assert view["role"].name == "level_b"
        assert [r.name for r in view["ancestors"]] == ["level_a"]
        assert [r.name for r in view["children"]] == ["level_c1", "level_c2"]
        assert view["depth"] == 1

    @pytest.mark.asyncio
    async def test_get_descendants(self, roles, make_role):
        a = await make_role("level_a")
        b = await make_role("level_b", parent=a)
        await make_role("level_c", parent=b)
        assert [r.name for r in await roles.get_descendants(a.id)] == ["level_b", "level_c"]


class TestRoleDeletion:
    @pytest.mark.asyncio
    async def test_system_role_cannot_be_deleted(self, roles, make_role):
        role = await make_role("operator", is_system_role=True)
        with pytest.raises(ConflictError):
            await roles.delete_role(role.id)

    @pytest.mark.asyncio
    async def test_role_with_users_requires_replacement(self, roles, bindings, make_role, make_user):
        role = await make_role("editor")
        user = await make_user()
        role_id = role.id
        await bindings.assign_role(user.id, role_id)
        with pytest.raises(DependencyViolationError):
            await roles.delete_role(role_id)

    @pytest.mark.asyncio
    async def test_delete_moves_users_and_detaches_children(self, db, roles, bindings, make_role, make_user):
        old = await make_role("old_team")
        child = await make_role("old_sub", parent=old)
        new = await make_role("new_team")
        user = await make_user()
        old_id, child_id, new_id, user_id = old.id, child.id, new.id, user.id
        await bindings.assign_role(user_id, old_id)

        outcome = await roles.delete_role(old_id, replacement_role_id=new_id)
        assert outcome == {"role_id": old_id, "moved_users": 1, "detached_children": [child_id]}

        with pytest.raises(NotFoundError):
            await roles.get_role(old_id)
        deleted = await hierarchy.load_role(db, old_id, include_deleted=True)
        assert deleted.deleted_at is not None
        assert deleted.user_count == 0
        assert (await roles.get_role(child_id)).parent_role_id is None
        assert (await roles.get_role(new_id)).user_count == 1
        held = await bindings.active_role_ids(user_id)
        assert held == [new_id]

    @pytest.mark.asyncio
    async def test_deleted_role_name_stays_reserved(self, roles, make_role):
        role = await make_role("temp_team")
        await roles.delete_role(role.id)
        with pytest.raises(ConflictError):
            await make_role("temp_team")


class TestRoleStatistics:
    @pytest.mark.asyncio
    async def test_statistics(self, roles, make_role):
        base = await make_role("member", is_default=True)
        await make_role("editor", parent=base)
        await make_role("operator", is_system_role=True)
        stats = await roles.statistics()
        assert stats["total"] == 3
        assert stats["active"] == 3
        assert stats["system"] == 1
        assert stats["with_parent"] == 1
        assert stats["default_role"] == "member"
        assert stats["by_role"] == {"editor": 0, "member": 0, "operator": 0}


class TestIdentifiers:
    def test_generate_ulid(self):
        first, second = generate_ulid(), generate_ulid()
        assert len(first) == 26
        assert first != second
        assert ulid.parse(first).str == first

    @pytest.mark.asyncio
    async def test_rows_get_ulid_primary_keys(self, make_role, make_user):
        role = await make_role("editor")
        user = await make_user()
        assert len(role.id) == 26 and len(user.id) == 26
        assert role.id != user.id
