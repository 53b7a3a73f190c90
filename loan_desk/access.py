"""
Access Control Module

Roles, permissions and the acting identity passed into every loan operation.
Identity itself is established elsewhere; the role carried by an Actor is
trusted as given.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set

from .errors import AccessDenied, ValidationError


class Role(Enum):
    """Back-office roles"""
    ADMIN = "admin"
    VERIFIER = "verifier"
    COLLECTIONS = "collections"
    SHOPKEEPER = "shopkeeper"
    CUSTOMER = "customer"


class Permission(Enum):
    """Loan operation permissions"""
    CREATE_LOAN = "create_loan"
    VIEW_LOAN = "view_loan"
    UPDATE_LOAN_STATUS = "update_loan_status"
    UPDATE_KYC_STATUS = "update_kyc_status"
    COLLECT_PAYMENT = "collect_payment"
    APPLY_PENALTY = "apply_penalty"
    SET_DUE_DATE = "set_due_date"
    DELETE_LOAN = "delete_loan"
    VIEW_STATISTICS = "view_statistics"


ROLE_PERMISSIONS: Dict[Role, Set[Permission]] = {
    Role.ADMIN: set(Permission),
    Role.VERIFIER: {
        Permission.VIEW_LOAN, Permission.VIEW_STATISTICS,
        Permission.UPDATE_LOAN_STATUS, Permission.UPDATE_KYC_STATUS,
    },
    Role.COLLECTIONS: {
        Permission.VIEW_LOAN, Permission.VIEW_STATISTICS,
        Permission.COLLECT_PAYMENT, Permission.APPLY_PENALTY, Permission.SET_DUE_DATE,
    },
    Role.SHOPKEEPER: {
        Permission.VIEW_LOAN, Permission.VIEW_STATISTICS,
        Permission.CREATE_LOAN, Permission.DELETE_LOAN,
    },
    Role.CUSTOMER: {
        Permission.VIEW_LOAN, Permission.VIEW_STATISTICS,
    },
}

# Roles that only see loans they are attached to, and the loan field that links them
OWNER_SCOPE_FIELDS: Dict[Role, str] = {
    Role.SHOPKEEPER: "shopkeeper_id",
    Role.CUSTOMER: "customer_id",
}


@dataclass(frozen=True)
class Actor:
    """Authenticated caller of a loan operation"""
    id: str
    role: Role
    name: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> 'Actor':
        """Build an actor from identity claims such as a decoded token payload"""
        actor_id = claims.get("id") or claims.get("_id") or claims.get("sub")
        if not actor_id:
            raise ValidationError("Actor claims missing id")
        try:
            role = Role(claims.get("role"))
        except ValueError:
            raise ValidationError(f"Unknown role: {claims.get('role')}")
        return cls(
            id=str(actor_id),
            role=role,
            name=claims.get("fullName") or claims.get("name")
        )

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def is_owner_scoped(self) -> bool:
        return self.role in OWNER_SCOPE_FIELDS

    @property
    def scope_field(self) -> Optional[str]:
        """Loan field that must equal this actor's id, if owner-scoped"""
        return OWNER_SCOPE_FIELDS.get(self.role)

    def has_permission(self, permission: Permission) -> bool:
        return permission in ROLE_PERMISSIONS.get(self.role, set())

    def scope_filters(self) -> Dict[str, str]:
        """Storage filters restricting a listing to this actor's loans"""
        field = self.scope_field
        return {field: self.id} if field else {}


def require_permission(actor: Actor, permission: Permission) -> None:
    """
    Raise AccessDenied unless the actor's role grants the permission
    """
    if not actor.has_permission(permission):
        raise AccessDenied(
            f"Role '{actor.role.value}' is not allowed to {permission.value.replace('_', ' ')}",
            {"role": actor.role.value, "permission": permission.value}
        )
