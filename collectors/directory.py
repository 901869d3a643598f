"""Microsoft Graph implementation of the Directory Provider.

Prerequisites:
  The signed-in identity needs Directory.Read.All (or User.Read.All +
  Group.Read.All + Domain.Read.All) on Microsoft Graph.
"""
from __future__ import annotations

from typing import Any

from collectors.azure_client import GraphClient
from schemas.rbac import ObjectType, Principal, VerifiedDomain

_ODATA_TYPES = {
    "#microsoft.graph.user": ObjectType.USER,
    "#microsoft.graph.group": ObjectType.GROUP,
    "#microsoft.graph.servicePrincipal": ObjectType.SERVICE_PRINCIPAL,
}

_USER_SELECT = "id,displayName,userPrincipalName"
_GROUP_SELECT = "id,displayName"


def odata_quote(value: str) -> str:
    """Quote a string literal for an OData ``$filter`` expression."""
    return "'" + value.replace("'", "''") + "'"


def to_principal(obj: dict[str, Any], default_type: ObjectType | None = None) -> Principal | None:
    """Map a Graph directory object to a ``Principal``; None for other types."""
    object_type = _ODATA_TYPES.get(obj.get("@odata.type", ""), default_type)
    if object_type is None:
        return None
    sign_in = obj.get("userPrincipalName") if object_type is ObjectType.USER else None
    if object_type is ObjectType.SERVICE_PRINCIPAL:
        sign_in = obj.get("appId")
    return Principal(
        object_id=obj.get("id", ""),
        object_type=object_type,
        display_name=obj.get("displayName") or "",
        sign_in_name=sign_in,
    )


class GraphDirectoryProvider:
    def __init__(self, graph: GraphClient):
        self.graph = graph

    def find_group_by_display_name(self, name: str) -> list[Principal]:
        items = self.graph.get_all("/groups", {
            "$filter": f"displayName eq {odata_quote(name)}",
            "$select": _GROUP_SELECT,
        })
        return [to_principal(i, ObjectType.GROUP) for i in items]

    def find_user_by_sign_in_name(self, name: str) -> list[Principal]:
        items = self.graph.get_all("/users", {
            "$filter": f"userPrincipalName eq {odata_quote(name)}",
            "$select": _USER_SELECT,
        })
        return [to_principal(i, ObjectType.USER) for i in items]

    def list_group_members(self, group_id: str) -> list[Principal]:
        items = self.graph.get_all(f"/groups/{group_id}/members", {
            "$select": "id,displayName,userPrincipalName,appId",
        })
        members = (to_principal(i) for i in items)
        # devices / org contacts cannot hold RBAC roles
        return [m for m in members if m is not None]

    def list_verified_domains(self) -> list[VerifiedDomain]:
        items = self.graph.get_all("/domains")
        return [
            VerifiedDomain(name=d.get("id", ""), is_initial=bool(d.get("isInitial")))
            for d in items
            if d.get("isVerified")
        ]

    def get_principals_by_ids(self, object_ids: list[str]) -> dict[str, Principal]:
        """Batch-resolve object ids (max 1000 per call) to principals."""
        out: dict[str, Principal] = {}
        ids = [i for i in dict.fromkeys(object_ids) if i]
        for start in range(0, len(ids), 1000):
            data = self.graph.post("/directoryObjects/getByIds", {
                "ids": ids[start:start + 1000],
                "types": ["user", "group", "servicePrincipal"],
            })
            for obj in data.get("value", []):
                p = to_principal(obj)
                if p is not None:
                    out[p.object_id] = p
        return out
