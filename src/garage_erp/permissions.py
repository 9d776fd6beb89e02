"""Role capability lookup used by the approval-aware operations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict

from .constants import ApprovalType


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"
    TAX = "tax"


@dataclass(frozen=True)
class ApprovalPermissions:
    """What a role may request and what it may decide, per request type."""

    can_request_parts: bool = False
    can_request_services: bool = False
    can_request_payments: bool = False
    can_request_status_changes: bool = False
    can_request_credit_payments: bool = False
    can_approve_parts: bool = False
    can_approve_services: bool = False
    can_approve_payments: bool = False
    can_approve_status_changes: bool = False
    can_approve_credit_payments: bool = False
    can_view_all_approvals: bool = False

    def can_request(self, request_type: ApprovalType) -> bool:
        return getattr(self, f"can_request_{_SUFFIXES[ApprovalType(request_type)]}")

    def can_approve(self, request_type: ApprovalType) -> bool:
        return getattr(self, f"can_approve_{_SUFFIXES[ApprovalType(request_type)]}")


_SUFFIXES: Dict[ApprovalType, str] = {
    ApprovalType.PART: "parts",
    ApprovalType.SERVICE: "services",
    ApprovalType.PAYMENT: "payments",
    ApprovalType.STATUS_CHANGE: "status_changes",
    ApprovalType.CREDIT_PAYMENT: "credit_payments",
}

_ALL_REQUESTS = dict(
    can_request_parts=True,
    can_request_services=True,
    can_request_payments=True,
    can_request_status_changes=True,
    can_request_credit_payments=True,
)

ROLE_PERMISSIONS: Dict[UserRole, ApprovalPermissions] = {
    UserRole.ADMIN: ApprovalPermissions(
        **_ALL_REQUESTS,
        can_approve_parts=True,
        can_approve_services=True,
        can_approve_payments=True,
        can_approve_status_changes=True,
        can_approve_credit_payments=True,
        can_view_all_approvals=True,
    ),
    # Payments and credit payments are approved by admins only.
    UserRole.MANAGER: ApprovalPermissions(
        **_ALL_REQUESTS,
        can_approve_parts=True,
        can_approve_services=True,
        can_approve_status_changes=True,
        can_view_all_approvals=True,
    ),
    UserRole.STAFF: ApprovalPermissions(**_ALL_REQUESTS),
    UserRole.TAX: ApprovalPermissions(can_view_all_approvals=True),
}


def get_approval_permissions(role: str) -> ApprovalPermissions:
    """Return the capabilities of ``role``; unknown roles get none."""

    try:
        return ROLE_PERMISSIONS[UserRole(role)]
    except ValueError:
        return ApprovalPermissions()


__all__ = ["UserRole", "ApprovalPermissions", "ROLE_PERMISSIONS", "get_approval_permissions"]
