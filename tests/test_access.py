"""
Tests for roles, permissions and actors
"""

import pytest

from loan_desk.access import Actor, Permission, ROLE_PERMISSIONS, Role, require_permission
from loan_desk.errors import AccessDenied, ValidationError


class TestActor:
    """Building actors from identity claims"""

    def test_from_claims(self):
        actor = Actor.from_claims({"_id": "64f0c1", "role": "shopkeeper", "fullName": "Anil Kumar"})

        assert actor.id == "64f0c1"
        assert actor.role is Role.SHOPKEEPER
        assert actor.display_name == "Anil Kumar"

    def test_missing_id(self):
        with pytest.raises(ValidationError, match="missing id"):
            Actor.from_claims({"role": "admin"})

    def test_unknown_role(self):
        with pytest.raises(ValidationError, match="Unknown role"):
            Actor.from_claims({"id": "u1", "role": "superuser"})

    def test_owner_scope(self):
        assert Actor("shop-1", Role.SHOPKEEPER).scope_filters() == {"shopkeeper_id": "shop-1"}
        assert Actor("cust-1", Role.CUSTOMER).scope_filters() == {"customer_id": "cust-1"}
        assert Actor("admin-1", Role.ADMIN).scope_filters() == {}
        assert not Actor("col-1", Role.COLLECTIONS).is_owner_scoped


class TestPermissions:
    """Role permission matrix"""

    def test_admin_has_everything(self):
        assert ROLE_PERMISSIONS[Role.ADMIN] == set(Permission)

    @pytest.mark.parametrize("role,permission,allowed", [
        (Role.VERIFIER, Permission.UPDATE_LOAN_STATUS, True),
        (Role.VERIFIER, Permission.COLLECT_PAYMENT, False),
        (Role.COLLECTIONS, Permission.APPLY_PENALTY, True),
        (Role.COLLECTIONS, Permission.UPDATE_LOAN_STATUS, False),
        (Role.SHOPKEEPER, Permission.CREATE_LOAN, True),
        (Role.SHOPKEEPER, Permission.DELETE_LOAN, True),
        (Role.SHOPKEEPER, Permission.COLLECT_PAYMENT, False),
        (Role.CUSTOMER, Permission.VIEW_LOAN, True),
        (Role.CUSTOMER, Permission.CREATE_LOAN, False),
    ])
    def test_matrix(self, role, permission, allowed):
        assert Actor("u1", role).has_permission(permission) is allowed

    def test_require_permission(self):
        require_permission(Actor("u1", Role.VERIFIER), Permission.UPDATE_KYC_STATUS)

        with pytest.raises(AccessDenied, match="not allowed to delete loan") as exc_info:
            require_permission(Actor("u1", Role.VERIFIER), Permission.DELETE_LOAN)
        assert exc_info.value.details == {"role": "verifier", "permission": "delete_loan"}
