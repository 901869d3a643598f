"""Shared pytest fixtures: in-memory Directory / Authorization providers.

No test in this repository talks to Azure; the engines only ever see
these fakes (or MagicMock-backed HTTP clients).
"""
from __future__ import annotations

import threading
from collections import defaultdict

import pytest

from engine.errors import AssignmentExists, ProviderError
from schemas.rbac import (
    ObjectType,
    Principal,
    RoleAssignmentRecord,
    RoleDefinition,
    Subscription,
    VerifiedDomain,
)

TARGET_SUB = "11111111-1111-1111-1111-111111111111"
READER_ID = "acdd72a7-3385-48ef-bd42-f606fba81ae7"
CONTRIBUTOR_ID = "b24988ac-6180-42a0-ab88-20f7382dd24c"


class FakeDirectory:
    def __init__(self, domains=None):
        self.groups: dict[str, list[Principal]] = defaultdict(list)
        self.users: dict[str, list[Principal]] = defaultdict(list)
        self.members: dict[str, list[Principal]] = {}
        self.domains = domains if domains is not None else [
            VerifiedDomain("tenant.onmicrosoft.com", is_initial=True),
            VerifiedDomain("fabrikam.com"),
        ]
        self.calls: list[tuple[str, str]] = []
        self.errors: dict[str, Exception] = {}
        self._lock = threading.Lock()

    def add_group(self, name: str, object_id: str) -> Principal:
        p = Principal(object_id, ObjectType.GROUP, name)
        self.groups[name].append(p)
        return p

    def add_user(self, upn: str, object_id: str, display_name: str = "") -> Principal:
        p = Principal(object_id, ObjectType.USER, display_name or upn, upn)
        self.users[upn].append(p)
        return p

    def _record(self, op: str, arg: str) -> None:
        with self._lock:
            self.calls.append((op, arg))
        if arg in self.errors:
            raise self.errors[arg]

    def find_group_by_display_name(self, name):
        self._record("group", name)
        return list(self.groups.get(name, []))

    def find_user_by_sign_in_name(self, name):
        self._record("user", name)
        return list(self.users.get(name, []))

    def list_group_members(self, group_id):
        self._record("members", group_id)
        return list(self.members.get(group_id, []))

    def list_verified_domains(self):
        return list(self.domains)


class FakeArmState:
    """Backing store shared by every FakeAuthorization handed out by a factory."""

    def __init__(self):
        self.subscriptions: list[Subscription] = []
        self.assignments: dict[str, list[RoleAssignmentRecord]] = {}
        self.role_definitions: dict[str, list[RoleDefinition]] = {}
        self.scope_errors: dict[str, Exception] = {}
        self.definition_errors: dict[str, Exception] = {}
        self.create_errors: dict[str, Exception] = {}
        self.existing: set[tuple[str, str, str]] = set()
        self.created: list[tuple[str, str, str]] = []
        self.role_lookups: list[str] = []
        self.lock = threading.Lock()


class FakeAuthorization:
    def __init__(self, state: FakeArmState):
        self.state = state
        self.subscription_id: str | None = None

    def _check_scope(self):
        err = self.state.scope_errors.get(self.subscription_id)
        if err is not None:
            raise err

    def list_subscriptions(self):
        return list(self.state.subscriptions)

    def set_active_scope(self, subscription_id):
        self.subscription_id = subscription_id

    def list_role_assignments(self, include_classic_administrators=False):
        self._check_scope()
        return list(self.state.assignments.get(self.subscription_id, []))

    def get_role_definition(self, role_definition_id):
        with self.state.lock:
            self.state.role_lookups.append(role_definition_id)
        for rd in self.state.role_definitions.get(self.subscription_id, []):
            if rd.id == role_definition_id:
                return rd
        raise ProviderError(f"Role definition {role_definition_id} not found", status_code=404)

    def list_role_definitions(self):
        self._check_scope()
        err = self.state.definition_errors.get(self.subscription_id)
        if err is not None:
            raise err
        return list(self.state.role_definitions.get(self.subscription_id, []))

    def create_role_assignment(self, scope, object_id, role_definition_id):
        key = (scope, object_id, role_definition_id)
        if object_id in self.state.create_errors:
            raise self.state.create_errors[object_id]
        with self.state.lock:
            if key in self.state.existing:
                raise AssignmentExists("RoleAssignmentExists", status_code=409)
            self.state.existing.add(key)
            self.state.created.append(key)


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def arm_state() -> FakeArmState:
    return FakeArmState()


@pytest.fixture
def authorization(arm_state) -> FakeAuthorization:
    auth = FakeAuthorization(arm_state)
    auth.set_active_scope(TARGET_SUB)
    return auth


@pytest.fixture
def authorization_factory(arm_state):
    return lambda: FakeAuthorization(arm_state)


def make_record(**overrides) -> RoleAssignmentRecord:
    fields = dict(
        object_id="src-0001",
        object_type=ObjectType.USER,
        display_name="Jane Doe",
        scope=f"/subscriptions/{TARGET_SUB}",
        sign_in_name="jane@fabrikam.com",
        role_definition_id=READER_ID,
        role_definition_name="Reader",
    )
    fields.update(overrides)
    return RoleAssignmentRecord(**fields)


@pytest.fixture
def record_factory():
    return make_record
