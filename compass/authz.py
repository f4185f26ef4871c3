"""Per-objective roles and permission checks.

Two tenant-wide modes:

- ``tenant_open``: any authenticated tenant member may act; the first writer
  to touch an objective with no members becomes its owner.
- ``members_only``: only explicit members may act; no bootstrap.

While an objective has memberships it always keeps at least one owner.
"""
from __future__ import annotations

import logging
import os
from typing import Protocol

from compass.errors import NotFound, PermissionDenied, ValidationError
from compass.schemas import MembershipRecord

log = logging.getLogger(__name__)

TENANT_OPEN = "tenant_open"
MEMBERS_ONLY = "members_only"

VIEWER = "viewer"
EDITOR = "editor"
OWNER = "owner"
VALID_ROLES = (VIEWER, EDITOR, OWNER)


class MembershipStore(Protocol):
    def get_membership(self, tenant_id: str, objective_id: str, user_id: str) -> MembershipRecord | None: ...
    def list_memberships(self, tenant_id: str, objective_id: str) -> list[MembershipRecord]: ...
    def add_membership(self, record: MembershipRecord) -> str: ...
    def update_membership_role(self, tenant_id: str, objective_id: str, user_id: str, role: str) -> None: ...
    def remove_membership(self, tenant_id: str, objective_id: str, user_id: str) -> None: ...
    def count_owners(self, tenant_id: str, objective_id: str) -> int: ...
    def count_memberships(self, tenant_id: str, objective_id: str) -> int: ...


def authz_mode_from_env() -> str:
    mode = (os.environ.get("AUTHZ_MODE") or TENANT_OPEN).strip().lower()
    return MEMBERS_ONLY if mode == MEMBERS_ONLY else TENANT_OPEN


def validate_role(role: str | None) -> str:
    value = (role or "").strip().lower()
    if value not in VALID_ROLES:
        raise ValidationError("invalid_role", f"Invalid role: {role!r}")
    return value


def can_view(role: str | None, mode: str) -> bool:
    if mode == TENANT_OPEN:
        return True
    return role is not None


def can_edit(role: str | None) -> bool:
    return role in (OWNER, EDITOR)


def can_delete(role: str | None) -> bool:
    return role == OWNER


def can_manage_members(role: str | None) -> bool:
    return role == OWNER


def can_remove_owner(owner_count: int, target_role: str) -> bool:
    """False when *target_role* is the sole remaining owner."""
    if target_role != OWNER:
        return True
    return owner_count > 1


def build_owner_membership(tenant_id: str, objective_id: str, user_id: str) -> MembershipRecord:
    return MembershipRecord(
        tenant_id=tenant_id, objective_id=objective_id, user_id=user_id,
        role=OWNER, created_by=user_id,
    )


class AuthzResolver:
    def __init__(self, store: MembershipStore, mode: str | None = None):
        self.store = store
        self.mode = mode or authz_mode_from_env()

    def resolve_role(self, tenant_id: str, objective_id: str, user_id: str) -> str | None:
        member = self.store.get_membership(tenant_id, objective_id, user_id)
        return member.role if member else None

    def resolve_for_write(self, tenant_id: str, objective_id: str, user_id: str) -> str | None:
        """Role for a write, bootstrapping the first writer as owner in open mode."""
        role = self.resolve_role(tenant_id, objective_id, user_id)
        if role:
            return role
        if self.mode != TENANT_OPEN:
            return None
        if self.store.count_memberships(tenant_id, objective_id) > 0:
            return None
        self.store.add_membership(build_owner_membership(tenant_id, objective_id, user_id))
        log.info("Bootstrapped %s as owner of objective %s", user_id, objective_id)
        return OWNER

    # -- guards used by the service layer -----------------------------------

    def require_view(self, tenant_id: str, objective_id: str, user_id: str) -> str | None:
        role = self.resolve_role(tenant_id, objective_id, user_id)
        if not can_view(role, self.mode):
            raise PermissionDenied("forbidden")
        return role

    def require_edit(self, tenant_id: str, objective_id: str, user_id: str) -> str:
        role = self.resolve_for_write(tenant_id, objective_id, user_id)
        if not can_edit(role):
            raise PermissionDenied("forbidden")
        return role  # type: ignore[return-value]

    def require_delete(self, tenant_id: str, objective_id: str, user_id: str) -> str:
        role = self.resolve_for_write(tenant_id, objective_id, user_id)
        if not can_delete(role):
            raise PermissionDenied("forbidden")
        return role  # type: ignore[return-value]

    def require_manage_members(self, tenant_id: str, objective_id: str, user_id: str) -> str:
        role = self.resolve_for_write(tenant_id, objective_id, user_id)
        if not can_manage_members(role):
            raise PermissionDenied("forbidden")
        return role  # type: ignore[return-value]

    # -- member management --------------------------------------------------

    def add_member(
        self, tenant_id: str, objective_id: str, actor_id: str, user_id: str, role: str,
    ) -> str:
        role = validate_role(role)
        self.require_manage_members(tenant_id, objective_id, actor_id)
        return self.store.add_membership(MembershipRecord(
            tenant_id=tenant_id, objective_id=objective_id, user_id=user_id,
            role=role, created_by=actor_id,
        ))

    def change_role(
        self, tenant_id: str, objective_id: str, actor_id: str, user_id: str, role: str,
    ) -> None:
        role = validate_role(role)
        self.require_manage_members(tenant_id, objective_id, actor_id)
        current = self.resolve_role(tenant_id, objective_id, user_id)
        if current is None:
            raise NotFound("member_not_found")
        if current == OWNER and role != OWNER:
            self._guard_last_owner(tenant_id, objective_id, current)
        self.store.update_membership_role(tenant_id, objective_id, user_id, role)

    def remove_member(self, tenant_id: str, objective_id: str, actor_id: str, user_id: str) -> None:
        self.require_manage_members(tenant_id, objective_id, actor_id)
        current = self.resolve_role(tenant_id, objective_id, user_id)
        if current is None:
            return
        self._guard_last_owner(tenant_id, objective_id, current)
        self.store.remove_membership(tenant_id, objective_id, user_id)

    def _guard_last_owner(self, tenant_id: str, objective_id: str, target_role: str) -> None:
        if not can_remove_owner(self.store.count_owners(tenant_id, objective_id), target_role):
            raise PermissionDenied("last_owner", "Cannot remove or downgrade the last owner")
