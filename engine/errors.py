"""Error taxonomy for export and reconciliation runs.

Only ``AuthenticationFailure`` is fatal.  Everything else is caught at the
boundary of a single record (reconcile) or a single scope (export) and
reported as data.
"""
from __future__ import annotations

from typing import Sequence


class MigrationError(Exception):
    """Base class; ``code`` is the stable name used in reports."""
    code = "MigrationError"


class AuthenticationFailure(MigrationError):
    code = "AuthenticationFailure"


class ScopeAccessDenied(MigrationError):
    code = "ScopeAccessDenied"

    def __init__(self, scope: str, message: str = ""):
        self.scope = scope
        super().__init__(message or f"Access denied to scope {scope}")


# ── Per-record resolution failures ────────────────────────────────
class ResolveError(MigrationError):
    code = "ResolveError"


class NotFound(ResolveError):
    code = "NotFound"


class Ambiguous(ResolveError):
    code = "Ambiguous"

    def __init__(self, message: str, candidates: Sequence[str] = ()):
        self.candidates = tuple(candidates)
        super().__init__(message)


class Unsupported(ResolveError):
    code = "Unsupported"


# ── Provider failures ─────────────────────────────────────────────
class ProviderError(MigrationError):
    code = "ProviderError"

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class AssignmentExists(ProviderError):
    """The target already holds an identical role assignment."""
    code = "AssignmentExists"
