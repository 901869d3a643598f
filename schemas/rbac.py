"""Core RBAC migration types: the shapes that cross layer boundaries.

Records read from an export are value data: frozen dataclasses that are
never mutated in place.  Resolution produces new values (``ResolvedPrincipal``,
``ReconcileOutcome``) instead of rewriting the source record.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from engine.errors import MigrationError


# ── Principal types ───────────────────────────────────────────────
class ObjectType(str, Enum):
    USER = "User"
    GROUP = "Group"
    SERVICE_PRINCIPAL = "ServicePrincipal"

    @classmethod
    def parse(cls, value: str | None) -> "ObjectType":
        """Parse an interchange / API principal type (case-insensitive)."""
        raw = (value or "").strip().lower()
        for member in cls:
            if member.value.lower() == raw:
                return member
        raise ValueError(f"Unknown principal type: {value!r}")


# ── Exported data ─────────────────────────────────────────────────
@dataclass(frozen=True)
class RoleAssignmentRecord:
    """One "who had what role where" binding, portable across tenants.

    ``object_id`` and ``role_definition_id`` are source-tenant identifiers;
    only the display / sign-in names are meaningful in another directory.
    """
    object_id: str
    object_type: ObjectType
    display_name: str
    scope: str
    sign_in_name: str | None = None
    role_definition_id: str | None = None
    role_definition_name: str | None = None


@dataclass(frozen=True)
class Principal:
    """A directory entity as returned by the Directory Provider."""
    object_id: str
    object_type: ObjectType
    display_name: str = ""
    sign_in_name: str | None = None


@dataclass(frozen=True)
class VerifiedDomain:
    name: str
    is_initial: bool = False


@dataclass(frozen=True)
class Subscription:
    id: str
    name: str = ""
    state: str = "Enabled"
    tenant_id: str | None = None


@dataclass(frozen=True)
class RoleDefinition:
    id: str
    name: str
    is_custom: bool = False
    payload: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class CustomRoleDefinition:
    """A tenant-authored role definition, exported one-per-file keyed by name."""
    id: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass
class GroupMembershipSnapshot:
    group_display_name: str
    group_object_id: str
    members: frozenset[Principal] = frozenset()


# ── Resolution ────────────────────────────────────────────────────
@dataclass(frozen=True)
class ResolvedPrincipal:
    """Target-tenant principal.  Transient, never persisted."""
    object_id: str
    object_type: ObjectType


@dataclass(frozen=True)
class NormalizedIdentity:
    login_name: str
    is_external_hint: bool = False


# ── Reconciliation outcomes ───────────────────────────────────────
class OutcomeStatus(str, Enum):
    ASSIGNED = "Assigned"
    PLANNED = "Planned"
    SKIPPED = "Skipped"
    FAILED = "Failed"


class SkipReason(str, Enum):
    SCOPE_NOT_ASSIGNABLE = "ScopeNotAssignable"
    MANUAL_ASSIGNMENT_REQUIRED = "ManualAssignmentRequired"
    ALREADY_ASSIGNED = "AlreadyAssigned"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class ReconcileOutcome:
    """Per-record result of a reconciliation run, in input order."""
    index: int
    record: RoleAssignmentRecord
    status: OutcomeStatus
    reason: str = ""
    error: MigrationError | None = None
    principal: ResolvedPrincipal | None = None
    target_scope: str | None = None
    target_role_definition_id: str | None = None

    @property
    def detail(self) -> str:
        return str(self.error) if self.error is not None else ""


# ── Export results ────────────────────────────────────────────────
@dataclass(frozen=True)
class ScopeFailure:
    subscription_id: str
    error: MigrationError


@dataclass
class ExportResult:
    """Everything the Export Collector gathered in one run.

    ``assignments_by_scope`` keeps subscription enumeration order; the
    global ``assignments`` list is the concatenation in that same order.
    """
    assignments_by_scope: dict[str, list[RoleAssignmentRecord]] = field(default_factory=dict)
    role_definitions: list[RoleDefinition] = field(default_factory=list)
    custom_roles: dict[str, CustomRoleDefinition] = field(default_factory=dict)
    group_snapshots: dict[str, GroupMembershipSnapshot] = field(default_factory=dict)
    failures: list[ScopeFailure] = field(default_factory=list)

    @property
    def assignments(self) -> list[RoleAssignmentRecord]:
        return [r for records in self.assignments_by_scope.values() for r in records]
