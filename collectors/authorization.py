"""ARM implementation of the Authorization Provider.

Role assignments and role definitions go through azure-mgmt-authorization;
subscriptions and classic administrators through the ARM REST client.
ARM only returns principal ids, so listed assignments are enriched with
display / sign-in names from the directory in one batched Graph call.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
)
from azure.mgmt.authorization import AuthorizationManagementClient

from collectors.azure_client import DEFAULT_TIMEOUT, AzureClient
from collectors.directory import GraphDirectoryProvider
from engine.errors import (
    AssignmentExists,
    AuthenticationFailure,
    ProviderError,
    ScopeAccessDenied,
)
from schemas.rbac import ObjectType, RoleAssignmentRecord, RoleDefinition, Subscription

log = logging.getLogger(__name__)

AUTHORIZATION_API_VERSION = "2022-04-01"
SUBSCRIPTIONS_API_VERSION = "2022-12-01"
CLASSIC_ADMINS_API_VERSION = "2015-07-01"

CUSTOM_ROLE = "CustomRole"


def guid_of(resource_id: str | None) -> str | None:
    """Last path segment of an ARM id (role definition GUID); None stays None."""
    if not resource_id:
        return None
    return resource_id.rstrip("/").rsplit("/", 1)[-1]


def _translate(e: Exception, scope: str = "", *, listing: bool = True) -> Exception:
    """Map an azure-core exception onto the migration error taxonomy.

    Transport failures (connection resets, read timeouts) carry no status
    code and become a plain ``ProviderError``.
    """
    if isinstance(e, ClientAuthenticationError):
        return AuthenticationFailure(str(e))
    if isinstance(e, ResourceExistsError):
        return AssignmentExists(e.message or str(e), status_code=409)
    status = getattr(e, "status_code", None)
    if status == 403 and listing and scope:
        return ScopeAccessDenied(scope, e.message if isinstance(e, HttpResponseError) else str(e))
    return ProviderError(str(e), status_code=status)


def _to_role_definition(rd: Any) -> RoleDefinition:
    return RoleDefinition(
        id=guid_of(rd.id) or rd.name,
        name=rd.role_name or rd.name,
        is_custom=(rd.role_type == CUSTOM_ROLE),
        payload=rd.as_dict(),
    )


class ArmAuthorizationProvider:
    """One instance per active subscription; not shared between threads."""

    def __init__(
        self,
        credential,
        directory: Optional[GraphDirectoryProvider] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.credential = credential
        self.directory = directory
        self.timeout = timeout
        self.arm = AzureClient(credential=credential, timeout=timeout)
        self.subscription_id: Optional[str] = None
        self._client: Optional[AuthorizationManagementClient] = None

    # ── scope ─────────────────────────────────────────────────────
    @property
    def scope(self) -> str:
        if not self.subscription_id:
            raise ProviderError("No active subscription; call set_active_scope() first")
        return f"/subscriptions/{self.subscription_id}"

    @property
    def client(self) -> AuthorizationManagementClient:
        if self._client is None:
            self._client = AuthorizationManagementClient(
                self.credential, self.subscription_id, api_version=AUTHORIZATION_API_VERSION,
            )
        return self._client

    def set_active_scope(self, subscription_id: str) -> None:
        self.subscription_id = subscription_id
        self.arm.subscription_id = subscription_id
        self._client = None

    def list_subscriptions(self) -> list[Subscription]:
        items = self.arm.get_all("/subscriptions", SUBSCRIPTIONS_API_VERSION)
        return [
            Subscription(
                id=s.get("subscriptionId", ""),
                name=s.get("displayName", ""),
                state=s.get("state", ""),
                tenant_id=s.get("tenantId"),
            )
            for s in items
        ]

    # ── assignments ───────────────────────────────────────────────
    def list_role_assignments(self, include_classic_administrators: bool = False) -> list[RoleAssignmentRecord]:
        scope = self.scope
        try:
            raw = list(self.client.role_assignments.list_for_subscription(timeout=self.timeout))
        except AzureError as e:
            raise _translate(e, scope) from e

        principals = {}
        if self.directory is not None:
            principals = self.directory.get_principals_by_ids([ra.principal_id for ra in raw])

        records = []
        for ra in raw:
            try:
                object_type = ObjectType.parse(ra.principal_type)
            except ValueError:
                log.debug("Skipping assignment %s for principal type %s", ra.name, ra.principal_type)
                continue
            p = principals.get(ra.principal_id)
            records.append(RoleAssignmentRecord(
                object_id=ra.principal_id,
                object_type=object_type,
                display_name=p.display_name if p else "",
                sign_in_name=p.sign_in_name if p and object_type is ObjectType.USER else None,
                scope=ra.scope,
                role_definition_id=guid_of(ra.role_definition_id),
            ))

        if include_classic_administrators:
            records.extend(self._list_classic_administrators())
        return records

    def _list_classic_administrators(self) -> list[RoleAssignmentRecord]:
        scope = self.scope
        items = self.arm.get_all(
            f"{scope}/providers/Microsoft.Authorization/classicAdministrators",
            CLASSIC_ADMINS_API_VERSION,
            scope=scope,
        )
        records = []
        for item in items:
            props = item.get("properties", {}) or {}
            email = props.get("emailAddress") or ""
            records.append(RoleAssignmentRecord(
                object_id="",
                object_type=ObjectType.USER,
                display_name=email,
                sign_in_name=email or None,
                scope=scope,
                role_definition_id=None,
                role_definition_name=props.get("role"),
            ))
        return records

    def create_role_assignment(self, scope: str, object_id: str, role_definition_id: str) -> None:
        full_role_id = (
            f"{self.scope}/providers/Microsoft.Authorization/roleDefinitions/{guid_of(role_definition_id)}"
        )
        parameters = {"properties": {"roleDefinitionId": full_role_id, "principalId": object_id}}
        try:
            self.client.role_assignments.create(
                scope, str(uuid.uuid4()), parameters, timeout=self.timeout,
            )
        except AzureError as e:
            raise _translate(e, scope, listing=False) from e

    # ── definitions ───────────────────────────────────────────────
    def get_role_definition(self, role_definition_id: str) -> RoleDefinition:
        scope = self.scope
        try:
            rd = self.client.role_definitions.get(scope, guid_of(role_definition_id), timeout=self.timeout)
        except AzureError as e:
            raise _translate(e, scope) from e
        return _to_role_definition(rd)

    def list_role_definitions(self) -> list[RoleDefinition]:
        scope = self.scope
        try:
            return [_to_role_definition(rd) for rd in self.client.role_definitions.list(scope, timeout=self.timeout)]
        except AzureError as e:
            raise _translate(e, scope) from e
