"""Export Collector: snapshot role assignments across subscriptions.

For every accessible subscription (except the directory pseudo-subscription):
  - list role assignments, classic administrators included
  - backfill missing role-definition display names by id lookup
  - snapshot group memberships, once per distinct group display name
  - list role definitions; keep custom ones individually, keyed by name

Scopes fan out over a bounded thread pool, one fresh Authorization Provider
per scope.  A provider failure on one scope is recorded and the run moves
on; only ``AuthenticationFailure`` aborts.  Nothing here touches the
filesystem; ``src.export_store`` is the sink.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Iterable, Sequence

from collectors.providers import AuthorizationFactory, DirectoryProvider
from engine.errors import AuthenticationFailure, MigrationError, ProviderError
from schemas.rbac import (
    CustomRoleDefinition,
    ExportResult,
    GroupMembershipSnapshot,
    ObjectType,
    RoleAssignmentRecord,
    RoleDefinition,
    ScopeFailure,
    Subscription,
)

log = logging.getLogger(__name__)

# Legacy accounts list the directory itself as a subscription.
DIRECTORY_PSEUDO_SUBSCRIPTION = "Access to Azure Active Directory"


@dataclass
class _ScopeExport:
    subscription_id: str
    assignments: list[RoleAssignmentRecord] = field(default_factory=list)
    role_definitions: list[RoleDefinition] = field(default_factory=list)
    snapshots: list[GroupMembershipSnapshot] = field(default_factory=list)
    error: MigrationError | None = None


class GroupSnapshotRegistry:
    """Thread-safe "already fetched" set of group display names."""

    def __init__(self, known: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._claimed: set[str] = set(known)

    def claim(self, name: str) -> bool:
        """Atomically claim *name*; False if it was already claimed."""
        with self._lock:
            if name in self._claimed:
                return False
            self._claimed.add(name)
            return True

    def release(self, name: str) -> None:
        with self._lock:
            self._claimed.discard(name)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._claimed


def exportable_subscriptions(subscriptions: Sequence[Subscription]) -> list[Subscription]:
    return [s for s in subscriptions if s.name != DIRECTORY_PSEUDO_SUBSCRIPTION]


def backfill_role_names(
    records: Sequence[RoleAssignmentRecord],
    authorization,
) -> list[RoleAssignmentRecord]:
    """Return records with ``role_definition_name`` populated.

    Lookups are cached per role-definition id for the scope being exported.
    A definition that cannot be read (deleted or orphaned) is named by its id.
    """
    cache: dict[str, str] = {}
    out: list[RoleAssignmentRecord] = []
    for rec in records:
        if rec.role_definition_name or not rec.role_definition_id:
            out.append(rec)
            continue
        rd_id = rec.role_definition_id
        if rd_id not in cache:
            try:
                cache[rd_id] = authorization.get_role_definition(rd_id).name
            except ProviderError as e:
                log.warning("Role definition %s not readable, recording its id as the name: %s", rd_id, e)
                cache[rd_id] = rd_id
        out.append(replace(rec, role_definition_name=cache[rd_id]))
    return out


class ExportCollector:
    def __init__(
        self,
        authorization_factory: AuthorizationFactory,
        directory: DirectoryProvider,
        *,
        max_workers: int = 4,
        known_groups: Iterable[str] = (),
        cancel: threading.Event | None = None,
    ):
        self.authorization_factory = authorization_factory
        self.directory = directory
        self.max_workers = max(1, max_workers)
        self.groups = GroupSnapshotRegistry(known_groups)
        self.cancel = cancel or threading.Event()

    def collect(self, subscriptions: Sequence[Subscription] | None = None) -> ExportResult:
        """Export every given subscription (default: all the provider lists)."""
        if subscriptions is None:
            subscriptions = self.authorization_factory().list_subscriptions()
        targets = exportable_subscriptions(subscriptions)
        log.info("Exporting role assignments from %d subscription(s)", len(targets))

        scope_results: list[_ScopeExport | None] = [None] * len(targets)

        def _work(index: int, sub: Subscription) -> None:
            if self.cancel.is_set():
                scope_results[index] = _ScopeExport(
                    sub.id, error=ProviderError("Export cancelled before this scope started"),
                )
                return
            scope_results[index] = self.collect_scope(sub.id)

        with ThreadPoolExecutor(max_workers=self.max_workers) as ex:
            futures = [ex.submit(_work, i, s) for i, s in enumerate(targets)]
            try:
                for fut in futures:
                    fut.result()
            except AuthenticationFailure:
                self.cancel.set()
                raise

        return _merge(r for r in scope_results if r is not None)

    def collect_scope(self, subscription_id: str) -> _ScopeExport:
        """Export one subscription; provider errors are captured, not raised."""
        part = _ScopeExport(subscription_id)
        try:
            authorization = self.authorization_factory()
            authorization.set_active_scope(subscription_id)
            raw = authorization.list_role_assignments(include_classic_administrators=True)
            part.assignments = backfill_role_names(raw, authorization)
            part.snapshots = self._snapshot_groups(part.assignments)
            part.role_definitions = authorization.list_role_definitions()
        except AuthenticationFailure:
            raise
        except MigrationError as e:
            log.warning("Scope %s skipped: %s: %s", subscription_id, e.code, e)
            part.error = e
            return part

        log.info(
            "Scope %s: %d assignment(s), %d role definition(s), %d new group snapshot(s)",
            subscription_id, len(part.assignments), len(part.role_definitions), len(part.snapshots),
        )
        return part

    def _snapshot_groups(self, records: Sequence[RoleAssignmentRecord]) -> list[GroupMembershipSnapshot]:
        snapshots = []
        for rec in records:
            if rec.object_type is not ObjectType.GROUP:
                continue
            if not self.groups.claim(rec.display_name):
                continue
            try:
                members = self.directory.list_group_members(rec.object_id)
            except AuthenticationFailure:
                raise
            except MigrationError as e:
                # give another scope the chance to snapshot it
                self.groups.release(rec.display_name)
                log.warning("Group '%s' membership not captured: %s", rec.display_name, e)
                continue
            log.debug("Group '%s': %d member(s)", rec.display_name, len(members))
            snapshots.append(GroupMembershipSnapshot(
                group_display_name=rec.display_name,
                group_object_id=rec.object_id,
                members=frozenset(members),
            ))
        return snapshots


def _merge(parts: Iterable[_ScopeExport]) -> ExportResult:
    result = ExportResult()
    seen_definitions: set[str] = set()
    for part in parts:
        # snapshots fetched before a scope failed stay claimed; keep them
        for snap in part.snapshots:
            result.group_snapshots.setdefault(snap.group_display_name, snap)
        if part.error is not None:
            result.failures.append(ScopeFailure(part.subscription_id, part.error))
            continue
        result.assignments_by_scope[part.subscription_id] = part.assignments
        for rd in part.role_definitions:
            if rd.id not in seen_definitions:
                seen_definitions.add(rd.id)
                result.role_definitions.append(rd)
            if rd.is_custom and rd.name not in result.custom_roles:
                result.custom_roles[rd.name] = CustomRoleDefinition(rd.id, rd.name, rd.payload)
    return result


def collect_export(
    authorization_factory: AuthorizationFactory,
    directory: DirectoryProvider,
    subscriptions: Sequence[Subscription] | None = None,
    **options,
) -> ExportResult:
    return ExportCollector(authorization_factory, directory, **options).collect(subscriptions)
