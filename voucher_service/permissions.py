"""
Roles and the capabilities they grant.

ROLE_CAPABILITIES is the single place that decides who may do what; the
voucher state machine and the route dependencies both consult it.
"""

import enum
import uuid
from dataclasses import dataclass
from typing import Optional

from voucher_service.errors import PermissionDenied


class Role(str, enum.Enum):
    SUPER_ADMIN = "super_admin"
    ORG_ADMIN = "org_admin"
    COMPANY_ADMIN = "company_admin"
    APPROVER = "approver"
    ACCOUNTS = "accounts"
    VIEWER = "viewer"


class Capability(str, enum.Enum):
    # Voucher lifecycle events
    CREATE = "create"
    UPDATE = "update"
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CODE = "request_code"
    CONFIRM_CODE = "confirm_code"
    CANCEL = "cancel"
    DELETE = "delete"
    # Everything else
    VIEW_VOUCHERS = "view_vouchers"
    VERIFY_SIGNATURE = "verify_signature"
    MANAGE_SIGNATURES = "manage_signatures"
    VIEW_AUDIT = "view_audit"
    EXPORT_AUDIT = "export_audit"
    VIEW_LICENSE = "view_license"


_ADMIN = frozenset(Capability)
_AUTHORING = frozenset({
    Capability.CREATE,
    Capability.UPDATE,
    Capability.DELETE,
    Capability.CANCEL,
})
_PAYOUT = frozenset({Capability.REQUEST_CODE, Capability.CONFIRM_CODE})
_DECISION = frozenset({Capability.APPROVE, Capability.REJECT, Capability.CANCEL})
_READ = frozenset({
    Capability.VIEW_VOUCHERS,
    Capability.VERIFY_SIGNATURE,
    Capability.VIEW_LICENSE,
})

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.SUPER_ADMIN: _ADMIN,
    Role.ORG_ADMIN: _ADMIN,
    Role.COMPANY_ADMIN: _AUTHORING | _DECISION | _PAYOUT | _READ | {Capability.VIEW_AUDIT},
    Role.APPROVER: _DECISION | _READ | {Capability.VIEW_AUDIT},
    Role.ACCOUNTS: _AUTHORING | _PAYOUT | _READ,
    Role.VIEWER: _READ,
}


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as supplied by the identity provider."""

    id: uuid.UUID
    tenant_id: uuid.UUID
    role: Role
    name: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    hardware_id: Optional[str] = None


def parse_role(value: str) -> Optional[Role]:
    try:
        return Role(value)
    except ValueError:
        return None


def has_capability(role: Role, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


def require_capability(actor: Actor, capability: Capability) -> None:
    if not has_capability(actor.role, capability):
        raise PermissionDenied(
            f"Role '{actor.role.value}' cannot perform '{capability.value}'",
            {"role": actor.role.value, "capability": capability.value},
        )
