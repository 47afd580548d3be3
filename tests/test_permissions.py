"""
Tests for the permission gate: role tables, specific grants and filtering
"""

import pytest

from account_compliance.permissions import (
    PermissionGate, EntityPermissions, PermissionAction, DEFAULT_ROLE
)


class TestEntityPermissions:
    """Test role table helpers"""

    def test_from_dict_and_back(self):
        permissions = EntityPermissions.from_dict({
            "view_roles": ["sales", "manager"],
            "delete_roles": ["manager"],
        })

        assert permissions.roles_for(PermissionAction.VIEW) == {"sales", "manager"}
        assert permissions.roles_for(PermissionAction.CREATE) == set()
        assert permissions.to_dict()["view_roles"] == ["manager", "sales"]


class TestPermissionGate:
    """Test permission evaluation order"""

    def setup_method(self):
        """Set up test fixtures"""
        self.gate = PermissionGate(
            entity_permissions={
                "account": {"view_roles": ["sales", "manager"], "delete_roles": ["manager"]},
            },
            user_roles={"sales1": ["sales"], "boss": ["admin"]},
        )

    def test_role_grants(self):
        assert self.gate.can_view("sales1", "account") is True
        assert self.gate.can_delete("sales1", "account") is False

    def test_specific_grant(self):
        self.gate.grant_specific_permission("sales1", "account", "id42", "delete")

        assert self.gate.can_delete("sales1", "account", "id42") is True
        assert self.gate.can_delete("sales1", "account", "id99") is False
        assert self.gate.can_update("sales1", "account", "id42") is False

    def test_revoke_specific_grant(self):
        self.gate.grant_specific_permission("sales1", "account", "id42", PermissionAction.DELETE)
        self.gate.revoke_specific_permission("sales1", "account", "id42", PermissionAction.DELETE)
        assert self.gate.can_delete("sales1", "account", "id42") is False

    def test_revocation_does_not_override_role_grant(self):
        self.gate.revoke_specific_permission("sales1", "account", "id42", "view")
        assert self.gate.can_view("sales1", "account", "id42") is True

    def test_admin_passes_everything(self):
        assert self.gate.can_view("boss", "account")
        assert self.gate.can_create("boss", "account")
        assert self.gate.can_update("boss", "account", "any")
        assert self.gate.can_delete("boss", "account", "any")

    def test_unknown_entity_type_denied(self):
        assert self.gate.can_view("sales1", "invoice") is False
        self.gate.grant_specific_permission("sales1", "invoice", "inv1", "view")
        assert self.gate.can_view("sales1", "invoice", "inv1") is False

    def test_create_has_no_specific_path(self):
        with pytest.raises(ValueError):
            self.gate.grant_specific_permission("sales1", "account", "id42", "create")
        assert self.gate.can_create("sales1", "account") is False

    def test_default_role(self):
        assert self.gate.get_user_roles("stranger") == [DEFAULT_ROLE]
        self.gate.set_entity_permissions("account", {"view_roles": [DEFAULT_ROLE]})
        assert self.gate.can_view("stranger", "account") is True

    def test_entity_permissions_roundtrip(self):
        assert self.gate.get_entity_permissions("contact") is None

        self.gate.set_entity_permissions("contact", EntityPermissions(view_roles={"sales"}))
        permissions = self.gate.get_entity_permissions("contact")

        assert permissions.view_roles == {"sales"}
        assert self.gate.get_entity_permissions("account").roles_for(PermissionAction.DELETE) == {"manager"}
        assert self.gate.can_view("sales1", "contact") is True

    def test_add_and_remove_role(self):
        self.gate.add_user_role("newbie", "manager")
        assert self.gate.can_delete("newbie", "account") is True

        self.gate.remove_user_role("newbie", "manager")
        assert self.gate.can_delete("newbie", "account") is False
        assert self.gate.get_user_roles("newbie") == [DEFAULT_ROLE]

    def test_check_by_name(self):
        assert self.gate.check("sales1", "account", "view") is True
        with pytest.raises(ValueError):
            self.gate.check("sales1", "account", "approve")

    def test_with_defaults(self):
        gate = PermissionGate.with_defaults(user_roles={"s": ["sales"], "m": ["manager"]}, default_role="user")

        assert gate.can_view("anyone", "account")
        assert not gate.can_create("anyone", "account")
        assert gate.can_create("s", "account")
        assert gate.can_update("s", "account", "a1")
        assert not gate.can_delete("s", "account", "a1")
        assert gate.can_delete("m", "account", "a1")


class TestFilterByPermission:
    """Test list filtering"""

    def setup_method(self):
        """Set up test fixtures"""
        self.gate = PermissionGate(
            entity_permissions={"account": {"view_roles": ["sales"]}},
            user_roles={"sales1": ["sales"], "guest1": ["guest"]},
        )
        self.entities = [{"id": "a1"}, {"id": "a2"}, {"id": "a3"}]

    def test_blanket_grant_returns_everything(self):
        assert self.gate.filter_by_permission("sales1", "account", self.entities) == self.entities

    def test_specific_grants_filter(self):
        self.gate.grant_specific_permission("guest1", "account", "a2", "view")
        result = self.gate.filter_by_permission("guest1", "account", self.entities)
        assert result == [{"id": "a2"}]

    def test_object_entities_and_custom_getter(self):
        class Item:
            def __init__(self, key):
                self.id = key
                self.key = key

        items = [Item("a1"), Item("a3")]
        self.gate.grant_specific_permission("guest1", "account", "a3", "view")

        assert [i.id for i in self.gate.filter_by_permission("guest1", "account", items)] == ["a3"]
        assert [i.key for i in self.gate.filter_by_permission(
            "guest1", "account", items, id_getter=lambda i: i.key)] == ["a3"]

    def test_nothing_visible(self):
        assert self.gate.filter_by_permission("guest1", "account", self.entities) == []
