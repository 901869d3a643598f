"""Principal Resolver: exported records back to target-directory object ids.

Resolution is keyed on names, not source object ids (those never carry
across tenants):

  Group             exact display-name search
  User              sign-in name, normalized for guest conventions
  ServicePrincipal  never attempted; surfaced for manual assignment

Directory searches go through ``lookup()``, which folds a raw match list
into a three-way ``LookupResult`` (NotFound | Unique | Ambiguous).
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from collectors.providers import DirectoryProvider
from engine.errors import Ambiguous, NotFound, ResolveError, Unsupported
from engine.identity import initial_domain_of, normalize
from schemas.rbac import (
    ObjectType,
    Principal,
    ResolvedPrincipal,
    RoleAssignmentRecord,
    VerifiedDomain,
)

# Classic co-administrators have no RBAC role definition of their own.
# They are replayed as Owner at the subscription root.
CO_ADMINISTRATOR = "CoAdministrator"
OWNER_ROLE_DEFINITION_ID = "8e3af657-a8ff-443c-a75c-2fe8c4bcb635"

ROOT_SCOPE = "/"

_SUBSCRIPTION_SCOPE_RE = re.compile(r"^/subscriptions/([^/]+)(/.*)?$", re.IGNORECASE)


# ── Three-way lookup ──────────────────────────────────────────────
class MatchKind(str, Enum):
    NOT_FOUND = "NotFound"
    UNIQUE = "Unique"
    AMBIGUOUS = "Ambiguous"


@dataclass(frozen=True)
class LookupResult:
    kind: MatchKind
    matches: tuple[Principal, ...] = ()

    @property
    def principal(self) -> Principal | None:
        return self.matches[0] if self.kind is MatchKind.UNIQUE else None


def lookup(matches: Sequence[Principal]) -> LookupResult:
    """Classify a directory search result by match count."""
    if not matches:
        return LookupResult(MatchKind.NOT_FOUND)
    if len(matches) == 1:
        return LookupResult(MatchKind.UNIQUE, (matches[0],))
    return LookupResult(MatchKind.AMBIGUOUS, tuple(matches))


@dataclass(frozen=True)
class ResolveResult:
    """Either a resolved principal or a classified failure, never both."""
    principal: ResolvedPrincipal | None = None
    error: ResolveError | None = None

    @property
    def ok(self) -> bool:
        return self.principal is not None


# ── Role target overrides ─────────────────────────────────────────
def subscription_root(subscription_id: str) -> str:
    return f"/subscriptions/{subscription_id}"


def rebase_scope(scope: str, subscription_id: str) -> str:
    """Move a subscription-rooted scope onto *subscription_id*.

    Scopes outside ``/subscriptions/...`` (management groups, root) are
    returned unchanged.
    """
    m = _SUBSCRIPTION_SCOPE_RE.match(scope)
    if not m:
        return scope
    return subscription_root(subscription_id) + (m.group(2) or "")


def resolve_role_target(
    record: RoleAssignmentRecord,
    target_subscription_id: str,
    *,
    rebase: bool = False,
) -> tuple[str, str | None]:
    """Return ``(scope, role_definition_id)`` to create the assignment with.

    CoAdministrator records always land on the subscription root with the
    Owner role, whatever scope or role id was recorded.
    """
    if (record.role_definition_name or "").strip().casefold() == CO_ADMINISTRATOR.casefold():
        return subscription_root(target_subscription_id), OWNER_ROLE_DEFINITION_ID
    scope = rebase_scope(record.scope, target_subscription_id) if rebase else record.scope
    return scope, record.role_definition_id


# ── Resolver ──────────────────────────────────────────────────────
@dataclass
class PrincipalResolver:
    """Resolves records against one target directory.

    ``verified_domains`` / ``initial_domain`` are read from the directory
    once via ``from_directory()``; pass them explicitly in tests.
    """
    directory: DirectoryProvider
    verified_domains: frozenset[str] = field(default_factory=frozenset)
    initial_domain: str = ""

    @classmethod
    def from_directory(cls, directory: DirectoryProvider) -> "PrincipalResolver":
        domains: list[VerifiedDomain] = directory.list_verified_domains()
        return cls(
            directory=directory,
            verified_domains=frozenset(d.name for d in domains),
            initial_domain=initial_domain_of(domains),
        )

    def login_name_for(self, record: RoleAssignmentRecord) -> str:
        return normalize(record.sign_in_name, self.verified_domains, self.initial_domain).login_name

    def resolve(self, record: RoleAssignmentRecord) -> ResolveResult:
        if record.object_type is ObjectType.GROUP:
            return self._resolve_group(record)
        if record.object_type is ObjectType.USER:
            return self._resolve_user(record)
        return ResolveResult(error=Unsupported(
            f"Service principal '{record.display_name}' must be assigned manually"
        ))

    def _resolve_group(self, record: RoleAssignmentRecord) -> ResolveResult:
        name = record.display_name
        found = lookup(self.directory.find_group_by_display_name(name))
        return self._to_result(found, ObjectType.GROUP, f"group '{name}'")

    def _resolve_user(self, record: RoleAssignmentRecord) -> ResolveResult:
        login = self.login_name_for(record)
        if not login:
            return ResolveResult(error=NotFound(
                f"User '{record.display_name}' has no recorded sign-in name"
            ))
        found = lookup(self.directory.find_user_by_sign_in_name(login))
        return self._to_result(found, ObjectType.USER, f"user '{login}'")

    @staticmethod
    def _to_result(found: LookupResult, object_type: ObjectType, label: str) -> ResolveResult:
        if found.kind is MatchKind.NOT_FOUND:
            return ResolveResult(error=NotFound(f"No {label} in target directory"))
        if found.kind is MatchKind.AMBIGUOUS:
            return ResolveResult(error=Ambiguous(
                f"{len(found.matches)} matches for {label}",
                candidates=[p.object_id for p in found.matches],
            ))
        return ResolveResult(principal=ResolvedPrincipal(
            object_id=found.principal.object_id,
            object_type=object_type,
        ))
