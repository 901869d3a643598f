"""Tests for the Graph / ARM provider implementations, with mocked clients."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ServiceRequestError,
    ServiceResponseError,
)

from collectors.authorization import ArmAuthorizationProvider, _translate, guid_of
from collectors.azure_client import raise_for_status
from collectors.directory import GraphDirectoryProvider, odata_quote, to_principal
from conftest import TARGET_SUB, make_record
from engine.errors import AssignmentExists, AuthenticationFailure, ProviderError, ScopeAccessDenied
from engine.reconciler import reconcile
from schemas.rbac import ObjectType, OutcomeStatus, Principal


# ── Graph directory ───────────────────────────────────────────────

def test_odata_quote_escapes_single_quotes():
    assert odata_quote("O'Brien") == "'O''Brien'"


def test_group_search_filters_on_exact_display_name():
    graph = MagicMock()
    graph.get_all.return_value = [{"id": "g1", "displayName": "Ops"}]
    found = GraphDirectoryProvider(graph).find_group_by_display_name("Ops")

    assert found == [Principal("g1", ObjectType.GROUP, "Ops")]
    path, params = graph.get_all.call_args.args
    assert path == "/groups"
    assert params["$filter"] == "displayName eq 'Ops'"


def test_user_search_filters_on_user_principal_name():
    graph = MagicMock()
    graph.get_all.return_value = [{"id": "u1", "displayName": "J", "userPrincipalName": "j_c.com#EXT#@t.com"}]
    found = GraphDirectoryProvider(graph).find_user_by_sign_in_name("j_c.com#EXT#@t.com")

    assert found[0].sign_in_name == "j_c.com#EXT#@t.com"
    assert graph.get_all.call_args.args[1]["$filter"] == "userPrincipalName eq 'j_c.com#EXT#@t.com'"


def test_group_members_drop_non_principals():
    graph = MagicMock()
    graph.get_all.return_value = [
        {"@odata.type": "#microsoft.graph.user", "id": "u1", "displayName": "Jane", "userPrincipalName": "jane@x.com"},
        {"@odata.type": "#microsoft.graph.device", "id": "d1", "displayName": "laptop"},
        {"@odata.type": "#microsoft.graph.servicePrincipal", "id": "s1", "displayName": "app", "appId": "app-1"},
    ]
    members = GraphDirectoryProvider(graph).list_group_members("g1")
    assert [(m.object_id, m.object_type) for m in members] == [("u1", ObjectType.USER), ("s1", ObjectType.SERVICE_PRINCIPAL)]


def test_only_verified_domains_are_listed():
    graph = MagicMock()
    graph.get_all.return_value = [
        {"id": "t.onmicrosoft.com", "isVerified": True, "isInitial": True},
        {"id": "pending.com", "isVerified": False, "isInitial": False},
    ]
    domains = GraphDirectoryProvider(graph).list_verified_domains()
    assert [(d.name, d.is_initial) for d in domains] == [("t.onmicrosoft.com", True)]


def test_to_principal_uses_default_type():
    assert to_principal({"id": "g1", "displayName": "Ops"}, ObjectType.GROUP).object_type is ObjectType.GROUP
    assert to_principal({"id": "x"}) is None


# ── HTTP error mapping ────────────────────────────────────────────

def _response(status, body=b'{"error": {"code": "Denied", "message": "no"}}'):
    r = requests.Response()
    r.status_code = status
    r._content = body
    return r


def test_raise_for_status_maps_http_errors():
    raise_for_status(_response(200, b"{}"))
    with pytest.raises(AuthenticationFailure):
        raise_for_status(_response(401))
    with pytest.raises(ScopeAccessDenied):
        raise_for_status(_response(403), scope="/subscriptions/s")
    with pytest.raises(ProviderError) as exc:
        raise_for_status(_response(500))
    assert exc.value.status_code == 500


# ── ARM authorization ─────────────────────────────────────────────

def test_guid_of():
    assert guid_of("/subscriptions/s/providers/Microsoft.Authorization/roleDefinitions/abc") == "abc"
    assert guid_of(None) is None


def test_translate_sdk_errors():
    assert isinstance(_translate(ClientAuthenticationError("bad token")), AuthenticationFailure)
    assert isinstance(_translate(ResourceExistsError("RoleAssignmentExists")), AssignmentExists)
    forbidden = HttpResponseError("forbidden")
    forbidden.status_code = 403
    assert isinstance(_translate(forbidden, "/subscriptions/s"), ScopeAccessDenied)
    assert type(_translate(forbidden, "/subscriptions/s", listing=False)) is ProviderError
    assert type(_translate(ServiceResponseError("read timed out"))) is ProviderError


def _provider(directory=None):
    provider = ArmAuthorizationProvider(MagicMock(), directory)
    provider.set_active_scope("sub-1")
    provider._client = MagicMock()
    provider.arm = MagicMock()
    return provider


def test_list_role_assignments_enriches_from_directory():
    directory = MagicMock()
    directory.get_principals_by_ids.return_value = {
        "p1": Principal("p1", ObjectType.USER, "Jane", "jane@x.com"),
    }
    provider = _provider(directory)
    provider._client.role_assignments.list_for_subscription.return_value = [
        SimpleNamespace(name="a1", principal_id="p1", principal_type="User", scope="/subscriptions/sub-1",
                        role_definition_id="/subscriptions/sub-1/providers/Microsoft.Authorization/roleDefinitions/r1"),
        SimpleNamespace(name="a2", principal_id="f1", principal_type="ForeignGroup", scope="/subscriptions/sub-1",
                        role_definition_id="r2"),
    ]
    provider.arm.get_all.return_value = [
        {"properties": {"emailAddress": "admin@x.com", "role": "CoAdministrator"}},
    ]

    records = provider.list_role_assignments(include_classic_administrators=True)

    assert len(records) == 2
    assert records[0].display_name == "Jane"
    assert records[0].sign_in_name == "jane@x.com"
    assert records[0].role_definition_id == "r1"
    assert records[0].role_definition_name is None
    assert records[1].role_definition_name == "CoAdministrator"
    assert records[1].scope == "/subscriptions/sub-1"


def test_create_role_assignment_maps_conflict_to_assignment_exists():
    provider = _provider()
    provider._client.role_assignments.create.side_effect = ResourceExistsError("RoleAssignmentExists")
    with pytest.raises(AssignmentExists):
        provider.create_role_assignment("/subscriptions/sub-1", "p1", "r1")

    scope, _, body = provider._client.role_assignments.create.call_args.args
    assert scope == "/subscriptions/sub-1"
    assert body["properties"]["principalId"] == "p1"
    assert body["properties"]["roleDefinitionId"].endswith("/roleDefinitions/r1")


def test_transport_error_on_create_becomes_provider_error():
    provider = _provider()
    provider._client.role_assignments.create.side_effect = ServiceRequestError("connection reset")
    with pytest.raises(ProviderError) as exc:
        provider.create_role_assignment("/subscriptions/sub-1", "p1", "r1")
    assert exc.value.status_code is None


def test_transport_error_on_listing_becomes_provider_error():
    provider = _provider()
    provider._client.role_definitions.list.side_effect = ServiceResponseError("read timed out")
    with pytest.raises(ProviderError):
        provider.list_role_definitions()


def test_connection_reset_fails_one_record_and_the_batch_continues(monkeypatch, directory):
    directory.add_user("jane@fabrikam.com", "tgt-jane")
    directory.add_user("bob@fabrikam.com", "tgt-bob")
    client = MagicMock()
    client.role_assignments.create.side_effect = [ServiceRequestError("connection reset"), None]
    monkeypatch.setattr("collectors.authorization.AuthorizationManagementClient", lambda *a, **kw: client)

    records = [
        make_record(),
        make_record(object_id="src-bob", display_name="Bob", sign_in_name="bob@fabrikam.com"),
    ]
    outcomes = reconcile(records, TARGET_SUB, directory, ArmAuthorizationProvider(MagicMock()), max_workers=1)

    assert [o.status for o in outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.ASSIGNED]
    assert isinstance(outcomes[0].error, ProviderError)
    assert "connection reset" in str(outcomes[0].error)


def test_list_role_definitions_flags_custom_roles():
    provider = _provider()
    builtin = MagicMock(id="/x/roleDefinitions/r1", role_name="Reader", role_type="BuiltInRole")
    custom = MagicMock(id="/x/roleDefinitions/c1", role_name="VM Restarter", role_type="CustomRole")
    builtin.as_dict.return_value = {}
    custom.as_dict.return_value = {"role_name": "VM Restarter"}
    provider._client.role_definitions.list.return_value = [builtin, custom]

    defs = provider.list_role_definitions()
    assert [(d.id, d.name, d.is_custom) for d in defs] == [("r1", "Reader", False), ("c1", "VM Restarter", True)]


def test_scope_required_before_listing():
    provider = ArmAuthorizationProvider(MagicMock())
    with pytest.raises(ProviderError):
        provider.list_role_definitions()


# ── REST paging ───────────────────────────────────────────────────

def test_arm_get_all_follows_next_link(monkeypatch):
    from collectors.azure_client import AzureClient

    pages = [
        _response(200, b'{"value": [{"id": 1}], "nextLink": "https://management.azure.com/next"}'),
        _response(200, b'{"value": [{"id": 2}]}'),
    ]
    urls = []

    def _fake_request(method, url, **kwargs):
        urls.append(url)
        assert kwargs["timeout"] == 5
        return pages.pop(0)

    monkeypatch.setattr("collectors.azure_client.requests.request", _fake_request)
    credential = MagicMock()
    credential.get_token.return_value = SimpleNamespace(token="t", expires_on=9_999_999_999)

    items = AzureClient(credential=credential, timeout=5).get_all("/subscriptions", "2022-12-01")

    assert items == [{"id": 1}, {"id": 2}]
    assert urls == ["https://management.azure.com/subscriptions", "https://management.azure.com/next"]
    assert credential.get_token.call_count == 1
