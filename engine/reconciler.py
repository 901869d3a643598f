"""Role Assignment Reconciler: replays exported assignments into a subscription.

Per record, independently of every other record:
  1. skip the directory root scope ``/``
  2. resolve the principal (engine.resolver)
  3. compute the target scope / role definition (CoAdministrator override)
  4. create the assignment, unless this is a dry run

Records fan out over a bounded thread pool.  Each worker writes exactly one
slot of a pre-sized outcome list, so outcomes come back in input order no
matter which worker finishes first.  There is no rollback: a partially
applied batch is a reported outcome.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

from collectors.providers import AuthorizationProvider, DirectoryProvider
from engine.errors import AssignmentExists, AuthenticationFailure, ProviderError, Unsupported
from engine.resolver import ROOT_SCOPE, PrincipalResolver, resolve_role_target
from schemas.rbac import OutcomeStatus, ReconcileOutcome, RoleAssignmentRecord, SkipReason

log = logging.getLogger(__name__)


class Reconciler:
    """Reconcile exported records against one target subscription."""

    def __init__(
        self,
        resolver: PrincipalResolver,
        authorization: AuthorizationProvider,
        *,
        max_workers: int = 4,
        dry_run: bool = False,
        rebase_scopes: bool = False,
        cancel: threading.Event | None = None,
    ):
        self.resolver = resolver
        self.authorization = authorization
        self.max_workers = max(1, max_workers)
        self.dry_run = dry_run
        self.rebase_scopes = rebase_scopes
        self.cancel = cancel or threading.Event()

    def reconcile(
        self,
        records: Sequence[RoleAssignmentRecord],
        target_subscription_id: str,
    ) -> list[ReconcileOutcome]:
        outcomes: list[ReconcileOutcome | None] = [None] * len(records)

        def _work(index: int, record: RoleAssignmentRecord) -> None:
            if self.cancel.is_set():
                outcomes[index] = _skipped(index, record, SkipReason.CANCELLED)
                return
            outcomes[index] = self.reconcile_one(index, record, target_subscription_id)

        with ThreadPoolExecutor(max_workers=self.max_workers) as ex:
            futures = [ex.submit(_work, i, r) for i, r in enumerate(records)]
            try:
                for fut in futures:
                    fut.result()
            except AuthenticationFailure:
                # fatal: stop issuing work, let in-flight calls drain
                self.cancel.set()
                raise

        return [o for o in outcomes if o is not None]

    def reconcile_one(
        self,
        index: int,
        record: RoleAssignmentRecord,
        target_subscription_id: str,
    ) -> ReconcileOutcome:
        """Process a single record.  Only ``AuthenticationFailure`` escapes."""
        if record.scope.strip() == ROOT_SCOPE:
            outcome = _skipped(index, record, SkipReason.SCOPE_NOT_ASSIGNABLE)
            _log_outcome(outcome)
            return outcome

        scope, role_definition_id = resolve_role_target(
            record, target_subscription_id, rebase=self.rebase_scopes,
        )
        try:
            resolved = self.resolver.resolve(record)
        except ProviderError as e:
            outcome = ReconcileOutcome(
                index=index, record=record,
                status=OutcomeStatus.FAILED, reason=e.code, error=e,
                target_scope=scope, target_role_definition_id=role_definition_id,
            )
            _log_outcome(outcome)
            return outcome

        if not resolved.ok:
            if isinstance(resolved.error, Unsupported):
                outcome = ReconcileOutcome(
                    index=index, record=record,
                    status=OutcomeStatus.SKIPPED,
                    reason=SkipReason.MANUAL_ASSIGNMENT_REQUIRED.value,
                    error=resolved.error,
                    target_scope=scope,
                    target_role_definition_id=role_definition_id,
                )
            else:
                outcome = ReconcileOutcome(
                    index=index, record=record,
                    status=OutcomeStatus.FAILED,
                    reason=resolved.error.code,
                    error=resolved.error,
                    target_scope=scope,
                    target_role_definition_id=role_definition_id,
                )
            _log_outcome(outcome)
            return outcome

        common = dict(
            index=index, record=record,
            principal=resolved.principal,
            target_scope=scope,
            target_role_definition_id=role_definition_id,
        )

        if not role_definition_id:
            err = ProviderError(f"No role definition id recorded for '{record.role_definition_name}'")
            outcome = ReconcileOutcome(status=OutcomeStatus.FAILED, reason=err.code, error=err, **common)
        elif self.dry_run:
            outcome = ReconcileOutcome(status=OutcomeStatus.PLANNED, **common)
        else:
            outcome = self._create(common, scope, resolved.principal.object_id, role_definition_id)

        _log_outcome(outcome)
        return outcome

    def _create(self, common: dict, scope: str, object_id: str, role_definition_id: str) -> ReconcileOutcome:
        try:
            self.authorization.create_role_assignment(scope, object_id, role_definition_id)
        except AssignmentExists as e:
            return ReconcileOutcome(
                status=OutcomeStatus.SKIPPED,
                reason=SkipReason.ALREADY_ASSIGNED.value,
                error=e,
                **common,
            )
        except ProviderError as e:
            return ReconcileOutcome(status=OutcomeStatus.FAILED, reason=e.code, error=e, **common)
        return ReconcileOutcome(status=OutcomeStatus.ASSIGNED, **common)


def reconcile(
    records: Sequence[RoleAssignmentRecord],
    target_subscription_id: str,
    directory: DirectoryProvider,
    authorization: AuthorizationProvider,
    **options,
) -> list[ReconcileOutcome]:
    """Convenience wrapper: read target domains, build a resolver, reconcile."""
    authorization.set_active_scope(target_subscription_id)
    resolver = PrincipalResolver.from_directory(directory)
    return Reconciler(resolver, authorization, **options).reconcile(records, target_subscription_id)


def summarize(outcomes: Sequence[ReconcileOutcome]) -> dict:
    """Counts per status and per (status, reason) for reports and logs."""
    by_status = Counter(o.status.value for o in outcomes)
    by_reason = Counter(f"{o.status.value}:{o.reason}" for o in outcomes if o.reason)
    return {
        "total": len(outcomes),
        "by_status": {s.value: by_status.get(s.value, 0) for s in OutcomeStatus},
        "by_reason": dict(sorted(by_reason.items())),
    }


def _skipped(index: int, record: RoleAssignmentRecord, reason: SkipReason) -> ReconcileOutcome:
    return ReconcileOutcome(index=index, record=record, status=OutcomeStatus.SKIPPED, reason=reason.value)


def _log_outcome(outcome: ReconcileOutcome) -> None:
    r = outcome.record
    level = logging.WARNING if outcome.status is OutcomeStatus.FAILED else logging.INFO
    log.log(
        level,
        "[%d] %s %s '%s' role=%s scope=%s %s %s",
        outcome.index,
        outcome.status.value,
        r.object_type.value,
        r.display_name,
        r.role_definition_name or r.role_definition_id,
        outcome.target_scope or r.scope,
        outcome.reason,
        outcome.detail,
    )
