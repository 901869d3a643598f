# interchange.py: Tabular interchange format for role assignment records
#
# Column order is fixed so exports from one run can be replayed by any
# later run:
#
#   ObjectId, DisplayName, ObjectType, Scope, SignInName,
#   RoleDefinitionId, RoleDefinitionName
#
# Empty optional cells read back as None, so a record written and re-read
# compares equal field for field.
# ──────────────────────────────────────────────────────────────────

from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, Iterator, Mapping

from schemas.rbac import ObjectType, RoleAssignmentRecord

COLUMNS = (
    "ObjectId",
    "DisplayName",
    "ObjectType",
    "Scope",
    "SignInName",
    "RoleDefinitionId",
    "RoleDefinitionName",
)

REQUIRED_COLUMNS = ("ObjectId", "DisplayName", "ObjectType", "Scope")


def record_to_row(record: RoleAssignmentRecord) -> dict[str, str]:
    return {
        "ObjectId": record.object_id,
        "DisplayName": record.display_name,
        "ObjectType": record.object_type.value,
        "Scope": record.scope,
        "SignInName": record.sign_in_name or "",
        "RoleDefinitionId": record.role_definition_id or "",
        "RoleDefinitionName": record.role_definition_name or "",
    }


def _optional(value: str | None) -> str | None:
    return value if value else None


def row_to_record(row: Mapping[str, str | None]) -> RoleAssignmentRecord:
    """Parse one interchange row.  Extra columns are ignored."""
    return RoleAssignmentRecord(
        object_id=row.get("ObjectId") or "",
        object_type=ObjectType.parse(row.get("ObjectType")),
        display_name=row.get("DisplayName") or "",
        scope=row.get("Scope") or "",
        sign_in_name=_optional(row.get("SignInName")),
        role_definition_id=_optional(row.get("RoleDefinitionId")),
        role_definition_name=_optional(row.get("RoleDefinitionName")),
    )


def write_records_csv(path: str | Path, records: Iterable[RoleAssignmentRecord],
                      extra: Iterable[Mapping[str, str]] | None = None) -> Path:
    """Write records in interchange column order.

    *extra*, when given, is zipped with *records* and its keys appended as
    additional columns (used for outcome reports).
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    records = list(records)
    extras = list(extra) if extra is not None else [{} for _ in records]
    extra_cols = list(extras[0].keys()) if extras and extras[0] else []
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=[*COLUMNS, *extra_cols])
        writer.writeheader()
        for rec, ext in zip(records, extras):
            writer.writerow({**record_to_row(rec), **ext})
    return path


def iter_records(lines: Iterable[str], source: str = "<input>") -> Iterator[RoleAssignmentRecord]:
    reader = csv.DictReader(lines)
    header = reader.fieldnames or []
    missing = [c for c in REQUIRED_COLUMNS if c not in header]
    if missing:
        raise ValueError(f"{source}: missing required column(s): {', '.join(missing)}")
    for line_no, row in enumerate(reader, start=2):
        try:
            yield row_to_record(row)
        except ValueError as e:
            raise ValueError(f"{source}:{line_no}: {e}") from e


def read_records_csv(path: str | Path) -> list[RoleAssignmentRecord]:
    path = Path(path)
    # utf-8-sig: exports opened and re-saved in Excel gain a BOM
    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        return list(iter_records(handle, source=str(path)))
