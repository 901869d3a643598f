"""Provider protocols: the two narrow seams the engines call through.

The engines never talk to Azure directly.  Production code plugs in the
Microsoft Graph / ARM implementations; tests plug in in-memory fakes.

Usage:
    directory = GraphDirectoryProvider(graph_client)           # production
    authorization = ArmAuthorizationProvider(credential, ...)  # production
    reconcile(records, sub_id, directory, authorization)
"""
from __future__ import annotations

from typing import Callable, Protocol

from schemas.rbac import (
    Principal,
    RoleAssignmentRecord,
    RoleDefinition,
    Subscription,
    VerifiedDomain,
)


class DirectoryProvider(Protocol):
    """Read access to the (target or source) directory."""

    def find_group_by_display_name(self, name: str) -> list[Principal]:
        """All groups whose display name equals *name* exactly."""
        ...

    def find_user_by_sign_in_name(self, name: str) -> list[Principal]:
        """All users whose sign-in identifier equals *name* exactly."""
        ...

    def list_group_members(self, group_id: str) -> list[Principal]:
        ...

    def list_verified_domains(self) -> list[VerifiedDomain]:
        ...


class AuthorizationProvider(Protocol):
    """Role assignment / definition access, scoped to one active subscription.

    Raises
    ------
    AuthenticationFailure   credentials rejected (fatal)
    ScopeAccessDenied       caller may not read the active scope
    ProviderError           any other API failure
    """

    def list_subscriptions(self) -> list[Subscription]:
        ...

    def set_active_scope(self, subscription_id: str) -> None:
        ...

    def list_role_assignments(self, include_classic_administrators: bool = False) -> list[RoleAssignmentRecord]:
        ...

    def get_role_definition(self, role_definition_id: str) -> RoleDefinition:
        ...

    def list_role_definitions(self) -> list[RoleDefinition]:
        ...

    def create_role_assignment(self, scope: str, object_id: str, role_definition_id: str) -> None:
        """Create one assignment; raises ``ProviderError`` (or ``AssignmentExists``)."""
        ...


# Per-scope export workers each need their own provider, because
# ``set_active_scope`` is stateful.
AuthorizationFactory = Callable[[], AuthorizationProvider]
