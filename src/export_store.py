# export_store.py: File sink for export runs, loader for import runs
#
# Layout under the output directory:
#
#   assignments-all.csv                 every scope, enumeration order
#   assignments-<subscriptionId>.csv    one per exported scope
#   role-definitions.json               all definitions, built-in + custom
#   custom-roles/<Name>.json            one file per custom definition
#   groups/<GroupDisplayName>.csv       membership snapshots
#   export-summary.json                 counts + per-scope failures
#
# The collector never writes files itself; this module is the only place
# an export touches the filesystem.
# ──────────────────────────────────────────────────────────────────

from __future__ import annotations

import csv
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from schemas.rbac import (
    ExportResult,
    GroupMembershipSnapshot,
    ReconcileOutcome,
    RoleAssignmentRecord,
)
from src.interchange import read_records_csv, write_records_csv

log = logging.getLogger(__name__)

ALL_ASSIGNMENTS = "assignments-all.csv"
ROLE_DEFINITIONS = "role-definitions.json"
CUSTOM_ROLES_DIR = "custom-roles"
GROUPS_DIR = "groups"
SUMMARY = "export-summary.json"
OUTCOMES = "import-outcomes.csv"

GROUP_COLUMNS = ("GroupDisplayName", "GroupObjectId", "ObjectId", "ObjectType", "DisplayName", "SignInName")

# Pattern for sanitising names into safe filename components.
_UNSAFE_NAME_CHARS = re.compile(r"[^\w\- .]")


def safe_filename(name: str) -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("_", name).strip(" .")
    return cleaned or "_"


def existing_group_snapshots(out_dir: str | Path) -> set[str]:
    """Group display names that already have a snapshot file on disk."""
    groups_dir = Path(out_dir) / GROUPS_DIR
    if not groups_dir.is_dir():
        return set()
    return {_snapshot_owner(path) or path.stem for path in groups_dir.glob("*.csv")}


def _snapshot_owner(path: Path) -> str | None:
    """GroupDisplayName recorded in a snapshot file; None for an empty group."""
    with path.open("r", encoding="utf-8", newline="") as handle:
        row = next(csv.DictReader(handle), None)
    return row["GroupDisplayName"] if row else None


def snapshot_path(groups_dir: Path, snapshot: GroupMembershipSnapshot) -> Path:
    """File for *snapshot*; suffixed with the group id when another group's
    name sanitises to the same file name."""
    stem = safe_filename(snapshot.group_display_name)
    path = groups_dir / f"{stem}.csv"
    if path.exists():
        owner = _snapshot_owner(path)
        if owner is not None and owner != snapshot.group_display_name:
            path = groups_dir / f"{stem}-{safe_filename(snapshot.group_object_id)}.csv"
    return path


def write_group_snapshot(groups_dir: Path, snapshot: GroupMembershipSnapshot) -> Path | None:
    """Write one snapshot; an existing file for the same group is kept."""
    path = snapshot_path(groups_dir, snapshot)
    if path.exists():
        log.debug("Group snapshot %s exists, not overwriting", path)
        return None
    groups_dir.mkdir(parents=True, exist_ok=True)
    members = sorted(snapshot.members, key=lambda p: (p.object_type.value, p.display_name, p.object_id))
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=GROUP_COLUMNS)
        writer.writeheader()
        for m in members:
            writer.writerow({
                "GroupDisplayName": snapshot.group_display_name,
                "GroupObjectId": snapshot.group_object_id,
                "ObjectId": m.object_id,
                "ObjectType": m.object_type.value,
                "DisplayName": m.display_name,
                "SignInName": m.sign_in_name or "",
            })
    return path


def _write_json(path: Path, payload) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, sort_keys=True, default=str)
    return path


def export_summary(result: ExportResult) -> dict:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "scopes_exported": len(result.assignments_by_scope),
        "assignment_count": len(result.assignments),
        "assignments_per_scope": {k: len(v) for k, v in result.assignments_by_scope.items()},
        "role_definition_count": len(result.role_definitions),
        "custom_roles": sorted(result.custom_roles),
        "group_snapshots": sorted(result.group_snapshots),
        "failures": [
            {"subscription_id": f.subscription_id, "error": f.error.code, "message": str(f.error)}
            for f in result.failures
        ],
    }


def write_export(result: ExportResult, out_dir: str | Path) -> dict[str, list[Path]]:
    """Persist an export; returns written paths grouped by kind."""
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    written: dict[str, list[Path]] = {"assignments": [], "roles": [], "groups": [], "summary": []}

    written["assignments"].append(write_records_csv(out / ALL_ASSIGNMENTS, result.assignments))
    for sub_id, records in result.assignments_by_scope.items():
        written["assignments"].append(
            write_records_csv(out / f"assignments-{safe_filename(sub_id)}.csv", records)
        )

    written["roles"].append(_write_json(
        out / ROLE_DEFINITIONS,
        [{"id": rd.id, "name": rd.name, "isCustom": rd.is_custom, "definition": rd.payload}
         for rd in result.role_definitions],
    ))
    used_stems: set[str] = set()
    for name, role in sorted(result.custom_roles.items()):
        stem = safe_filename(name)
        if stem.casefold() in used_stems:
            stem = f"{stem}-{safe_filename(role.id)}"
        used_stems.add(stem.casefold())
        written["roles"].append(_write_json(out / CUSTOM_ROLES_DIR / f"{stem}.json", role.payload))

    for snap in result.group_snapshots.values():
        path = write_group_snapshot(out / GROUPS_DIR, snap)
        if path is not None:
            written["groups"].append(path)

    written["summary"].append(_write_json(out / SUMMARY, export_summary(result)))
    log.info(
        "Export written to %s: %d assignment file(s), %d role file(s), %d group snapshot(s)",
        out, len(written["assignments"]), len(written["roles"]), len(written["groups"]),
    )
    return written


def load_import_records(path: str | Path) -> list[RoleAssignmentRecord]:
    return read_records_csv(path)


def outcome_columns(outcome: ReconcileOutcome) -> dict[str, str]:
    return {
        "Status": outcome.status.value,
        "Reason": outcome.reason,
        "Detail": outcome.detail,
        "TargetObjectId": outcome.principal.object_id if outcome.principal else "",
        "TargetScope": outcome.target_scope or "",
        "TargetRoleDefinitionId": outcome.target_role_definition_id or "",
    }


def write_outcomes(outcomes: list[ReconcileOutcome], out_dir: str | Path) -> Path:
    """Outcome report in interchange columns plus result columns, input order."""
    return write_records_csv(
        Path(out_dir) / OUTCOMES,
        [o.record for o in outcomes],
        extra=[outcome_columns(o) for o in outcomes],
    )
