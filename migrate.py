#!/usr/bin/env python3
# migrate.py: RBAC export / import entry point
#
#   python migrate.py export [--output-dir out] [--subscription ID ...]
#   python migrate.py import --file out/assignments-all.csv --subscription ID [--dry-run]
#
# Exit status: 0 completed (individual records may still have failed),
#              1 authentication failure, 2 invalid arguments / configuration,
#              3 provider failure before any per-record / per-scope work began.
# ──────────────────────────────────────────────────────────────────

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from engine.errors import AuthenticationFailure, MigrationError
from engine.export_collector import ExportCollector
from engine.reconciler import reconcile, summarize
from schemas.rbac import Subscription
from src.config import Settings

log = logging.getLogger("migrate")

EXIT_OK = 0
EXIT_AUTH = 1
EXIT_USAGE = 2
EXIT_PROVIDER = 3


# ══════════════════════════════════════════════════════════════════
# Parameters
# ══════════════════════════════════════════════════════════════════

class ImportParams(BaseModel):
    file: str = Field(description="Interchange CSV produced by an export run.")
    subscription: str = Field(description="Target subscription id.")
    dry_run: bool = Field(default=False, description="Resolve only, create nothing.")
    rebase_scopes: bool = Field(
        default=False,
        description="Rewrite /subscriptions/<source> scopes onto the target subscription.",
    )

    @field_validator("file", "subscription")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class ExportParams(BaseModel):
    subscriptions: list[str] = Field(
        default_factory=list,
        description="Restrict the export to these subscription ids (default: all visible).",
    )


# ══════════════════════════════════════════════════════════════════
# Provider wiring
# ══════════════════════════════════════════════════════════════════

def build_providers(settings: Settings):
    """Return ``(directory, authorization_factory)`` bound to a verified credential."""
    from collectors.auth import build_credential, verify_credential
    from collectors.authorization import ArmAuthorizationProvider
    from collectors.azure_client import build_graph_client
    from collectors.directory import GraphDirectoryProvider

    credential = build_credential(settings.tenant_id)
    verify_credential(credential)

    directory = GraphDirectoryProvider(build_graph_client(credential, timeout=settings.timeout))

    def authorization_factory():
        return ArmAuthorizationProvider(credential, directory, timeout=settings.timeout)

    return directory, authorization_factory


def _install_cancel_handler(cancel: threading.Event):
    """Route SIGINT to *cancel*; returns the previous handler (None off the main thread)."""
    def _handler(signum, frame):
        log.warning("Interrupt received: finishing in-flight calls, starting no new work")
        cancel.set()

    if threading.current_thread() is not threading.main_thread():
        return None
    return signal.signal(signal.SIGINT, _handler)


# ══════════════════════════════════════════════════════════════════
# Commands
# ══════════════════════════════════════════════════════════════════

def run_export(params: ExportParams, settings: Settings, cancel: threading.Event) -> int:
    from reporting.render import render_export_report
    from src.export_store import existing_group_snapshots, write_export

    directory, authorization_factory = build_providers(settings)
    out_dir = Path(settings.output_dir)

    subscriptions = None
    if params.subscriptions:
        subscriptions = [Subscription(id=s) for s in params.subscriptions]

    collector = ExportCollector(
        authorization_factory,
        directory,
        max_workers=settings.max_workers,
        known_groups=existing_group_snapshots(out_dir),
        cancel=cancel,
    )
    result = collector.collect(subscriptions)
    write_export(result, out_dir)
    report = render_export_report(result, out_path=str(out_dir / "export-report.html"))

    print(f"Exported {len(result.assignments)} assignment(s) from "
          f"{len(result.assignments_by_scope)} subscription(s) to {out_dir}")
    for failure in result.failures:
        print(f"  ✗ {failure.subscription_id}: {failure.error.code}: {failure.error}")
    print(f"Report: {report}")
    return EXIT_OK


def run_import(params: ImportParams, settings: Settings, cancel: threading.Event) -> int:
    from reporting.render import render_import_report
    from src.export_store import load_import_records, write_outcomes

    # parse before any provider call: a bad file fails fast
    records = load_import_records(params.file)
    log.info("Loaded %d record(s) from %s", len(records), params.file)

    directory, authorization_factory = build_providers(settings)
    outcomes = reconcile(
        records,
        params.subscription,
        directory,
        authorization_factory(),
        max_workers=settings.max_workers,
        dry_run=params.dry_run,
        rebase_scopes=params.rebase_scopes,
        cancel=cancel,
    )

    out_dir = Path(settings.output_dir)
    csv_path = write_outcomes(outcomes, out_dir)
    report = render_import_report(
        outcomes, params.subscription,
        out_path=str(out_dir / "import-report.html"),
        dry_run=params.dry_run,
    )

    summary = summarize(outcomes)
    log.info("Import summary: %s", summary)
    counts = ", ".join(f"{k}={v}" for k, v in summary["by_status"].items())
    print(f"Processed {summary['total']} record(s): {counts}")
    print(f"Outcomes: {csv_path}")
    print(f"Report: {report}")
    return EXIT_OK


# ══════════════════════════════════════════════════════════════════
# Entry point
# ══════════════════════════════════════════════════════════════════

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Export role assignments from Azure subscriptions and replay them into a target subscription."
    )
    parser.add_argument("--output-dir", help="Directory for exported files and reports")
    parser.add_argument("--workers", type=int, help="Maximum concurrent provider calls")
    parser.add_argument("--timeout", type=float, help="Per-call timeout in seconds")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    sub = parser.add_subparsers(dest="command", required=True)

    exp = sub.add_parser("export", help="Export role assignments, role definitions and group memberships")
    exp.add_argument("--subscription", action="append", default=[], dest="subscriptions",
                     help="Subscription id to export (repeatable; default: all visible)")

    imp = sub.add_parser("import", help="Re-create exported role assignments in a target subscription")
    imp.add_argument("--file", default="", help="Interchange CSV from an export run")
    imp.add_argument("--subscription", default="", help="Target subscription id")
    imp.add_argument("--dry-run", action="store_true", help="Resolve principals but create nothing")
    imp.add_argument("--rebase-scopes", action="store_true",
                     help="Rewrite recorded subscription scopes onto the target subscription")
    return parser.parse_args(argv)


def _settings_for(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if args.output_dir:
        settings.output_dir = args.output_dir
    if args.workers is not None:
        settings.max_workers = max(1, args.workers)
    if args.timeout is not None:
        settings.timeout = args.timeout
    if args.log_level:
        settings.log_level = args.log_level.upper()
    return settings


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = _settings_for(args)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "import":
            params = ImportParams(file=args.file, subscription=args.subscription,
                                  dry_run=args.dry_run, rebase_scopes=args.rebase_scopes)
        else:
            params = ExportParams(subscriptions=args.subscriptions)
    except ValidationError as e:
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"])
            print(f"Invalid argument --{field}: {err['msg']}", file=sys.stderr)
        return EXIT_USAGE

    cancel = threading.Event()
    previous = _install_cancel_handler(cancel)

    try:
        if args.command == "import":
            return run_import(params, settings, cancel)
        return run_export(params, settings, cancel)
    except AuthenticationFailure as e:
        log.error("Authentication failed: %s", e)
        return EXIT_AUTH
    except MigrationError as e:
        log.error("Provider call failed: %s: %s", e.code, e)
        return EXIT_PROVIDER
    except (OSError, ValueError) as e:
        log.error("%s", e)
        return EXIT_USAGE
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


if __name__ == "__main__":
    sys.exit(main())
