from jinja2 import Environment, FileSystemLoader, select_autoescape
import os
from datetime import datetime, timezone

from engine.reconciler import summarize
from schemas.rbac import OutcomeStatus


# ── Status badge classes (CSS) ───────────────────────────────────
_STATUS_CLASS = {
    OutcomeStatus.ASSIGNED.value: "ok",
    OutcomeStatus.PLANNED.value: "info",
    OutcomeStatus.SKIPPED.value: "muted",
    OutcomeStatus.FAILED.value: "bad",
}


def _outcome_row(outcome) -> dict:
    r = outcome.record
    return {
        "index": outcome.index,
        "status": outcome.status.value,
        "status_class": _STATUS_CLASS.get(outcome.status.value, "muted"),
        "reason": outcome.reason,
        "detail": outcome.detail,
        "object_type": r.object_type.value,
        "display_name": r.display_name,
        "sign_in_name": r.sign_in_name or "",
        "role": r.role_definition_name or r.role_definition_id or "",
        "scope": outcome.target_scope or r.scope,
        "target_object_id": outcome.principal.object_id if outcome.principal else "",
    }


def build_import_context(outcomes, subscription_id: str, *, dry_run: bool = False) -> dict:
    """Template context for a reconciliation run; rows keep input order."""
    rows = [_outcome_row(o) for o in outcomes]
    action_items = [row for row in rows if row["reason"] == "ManualAssignmentRequired"]
    return {
        "kind": "import",
        "title": f"RBAC import into {subscription_id}" + (" (dry run)" if dry_run else ""),
        "generated": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        "summary": summarize(outcomes),
        "rows": rows,
        "action_items": action_items,
    }


def build_export_context(result) -> dict:
    """Template context for an export run, grouped by scope."""
    scopes = []
    for sub_id, records in result.assignments_by_scope.items():
        scopes.append({
            "subscription_id": sub_id,
            "rows": [
                {
                    "object_type": r.object_type.value,
                    "display_name": r.display_name,
                    "sign_in_name": r.sign_in_name or "",
                    "role": r.role_definition_name or "",
                    "scope": r.scope,
                }
                for r in records
            ],
        })
    return {
        "kind": "export",
        "title": "RBAC export",
        "generated": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        "scopes": scopes,
        "custom_roles": sorted(result.custom_roles),
        "groups": sorted(result.group_snapshots),
        "failures": [
            {"subscription_id": f.subscription_id, "code": f.error.code, "message": str(f.error)}
            for f in result.failures
        ],
    }


def generate_report(context: dict, template_name: str = "report_template.html", out_path: str = None) -> str:
    base_dir = os.path.dirname(__file__)
    env = Environment(
        loader=FileSystemLoader(base_dir),
        autoescape=select_autoescape(["html", "xml"])
    )
    template = env.get_template(template_name)
    html = template.render(**context)

    if out_path is None:
        out_path = os.path.join(os.getcwd(), "report.html")
    os.makedirs(os.path.dirname(os.path.abspath(out_path)), exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as f:
        f.write(html)
    return out_path


def render_import_report(outcomes, subscription_id: str, out_path: str = None, *, dry_run: bool = False) -> str:
    return generate_report(build_import_context(outcomes, subscription_id, dry_run=dry_run), out_path=out_path)


def render_export_report(result, out_path: str = None) -> str:
    return generate_report(build_export_context(result), out_path=out_path)
