"""Vaccination bucket command-line orchestrator.

Loads a vaccination calendar and a child roster into the database, and
rebuilds the Due/Late buckets and compliance status of the children.

**Commands:**

- ``load``: replace the calendar with the YAML calendar file and register
  the children of an optional roster (CSV or Excel)
- ``rebuild``: rebuild every child, or only the children given with
  ``--child``, then write the CSV report when enabled

**Error Handling:**

- Configuration, calendar and roster errors fail fast: nothing is rebuilt
- Per-child rebuild errors follow ``rebuild.fail_fast``: either the run stops
  at the first failure, or failures are logged and reported at the end

**Exit Codes:**
- 0: Command completed successfully
- 1: Command failed, or at least one child could not be rebuilt
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.engine import make_url

from .config_loader import load_calendar, load_config
from .data_models import BatchSummary
from .enums import ComplianceStatus
from .rebuild import rebuild_all, rebuild_many
from .report import build_report, write_report
from .roster import load_roster
from .sql_store import SqlStore

SCRIPT_DIR = Path(__file__).resolve().parent
ROOT_DIR = SCRIPT_DIR.parent
DEFAULT_OUTPUT_DIR = ROOT_DIR / "output"
DEFAULT_CONFIG_DIR = ROOT_DIR / "config"

LOG = logging.getLogger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="vaccine-buckets",
        description="Load vaccination calendars and rebuild children's vaccination buckets",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s load --roster children.xlsx
  %(prog)s rebuild
  %(prog)s rebuild --child C-001 --child C-002
        """,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_DIR,
        dest="config_dir",
        help=f"Config directory (default: {DEFAULT_CONFIG_DIR})",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=DEFAULT_OUTPUT_DIR,
        dest="output_dir",
        help=f"Output directory for logs and reports (default: {DEFAULT_OUTPUT_DIR})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    load_parser = subparsers.add_parser(
        "load", help="Load the calendar and an optional child roster"
    )
    load_parser.add_argument(
        "--calendar",
        type=Path,
        default=None,
        help="Calendar YAML file (default: calendar.path in parameters.yaml)",
    )
    load_parser.add_argument(
        "--roster",
        type=Path,
        default=None,
        help="Child roster (.csv, .xlsx or .xls)",
    )

    rebuild_parser = subparsers.add_parser(
        "rebuild", help="Rebuild vaccination buckets"
    )
    rebuild_parser.add_argument(
        "--child",
        action="append",
        default=None,
        dest="child_ids",
        metavar="ID",
        help="Rebuild only this child (repeatable). Default: every child.",
    )

    return parser.parse_args(argv)


def configure_logging(output_dir: Path, run_id: str) -> Path:
    """Send log records to ``<output_dir>/logs/rebuild_<run_id>.log``.

    Returns
    -------
    Path
        Path to the created log file.
    """
    log_dir = output_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"rebuild_{run_id}.log"

    handler = logging.FileHandler(log_path, encoding="utf-8")
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(logging.INFO)
    root_logger.addHandler(handler)

    return log_path


def resolve_database_url(url: str, base_dir: Path = ROOT_DIR) -> str:
    """Anchor relative SQLite file paths at ``base_dir`` and create their folder.

    Other URLs (in-memory SQLite, server databases) are returned unchanged.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return url
    database = parsed.database
    if not database or database == ":memory:":
        return url

    db_path = Path(database)
    if not db_path.is_absolute():
        db_path = base_dir / db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return parsed.set(database=str(db_path)).render_as_string(hide_password=False)


def open_store(config: Dict[str, Any]) -> SqlStore:
    """Create the SQL store described by the ``database`` section."""
    database_config = config.get("database", {}) or {}
    url = resolve_database_url(
        database_config.get("url", "sqlite:///output/vaccine_buckets.db")
    )
    store = SqlStore.from_url(url, echo=database_config.get("echo", False))
    store.create_all()
    return store


def resolve_calendar_path(
    config: Dict[str, Any], config_dir: Path, override: Optional[Path] = None
) -> Path:
    """Return the calendar file to load.

    An explicit ``override`` wins; otherwise ``calendar.path`` is read from
    the configuration, relative to the config directory.

    Raises
    ------
    ValueError
        If no calendar file is configured.
    """
    if override is not None:
        return override
    calendar_path = (config.get("calendar", {}) or {}).get("path")
    if not calendar_path:
        raise ValueError(
            "No calendar file given: pass --calendar or set calendar.path in parameters.yaml"
        )
    path = Path(calendar_path)
    return path if path.is_absolute() else config_dir / path


def print_header(command: str, run_id: str) -> None:
    """Print the run header."""
    print()
    print(f"🚀 Starting vaccination bucket {command}")
    print(f"🆔 Run: {run_id}")
    print()


def print_step(step_num: int, description: str) -> None:
    """Print a step header."""
    print()
    print(f"{'=' * 60}")
    print(f"Step {step_num}: {description}")
    print(f"{'=' * 60}")


def print_step_complete(step_num: int, description: str, duration: float) -> None:
    """Print step completion message."""
    print(f"✅ Step {step_num}: {description} complete in {duration:.1f} seconds.")


def print_summary(
    step_times: List[Tuple[str, float]],
    total_duration: float,
    summary: Optional[BatchSummary] = None,
) -> None:
    """Print the timing summary and, after a rebuild, the child counts."""
    print()
    print("🎉 Run completed successfully!")
    print("🕒 Time Summary:")
    for step_name, duration in step_times:
        print(f"  - {step_name:<25} {duration:.1f}s")
    print(f"  - {'─' * 25} {'─' * 6}")
    print(f"  - {'Total Time':<25} {total_duration:.1f}s")
    if summary is not None:
        print()
        print(f"👥 Children rebuilt:       {summary.processed}")
        print(
            f"⚠️  Not up to date:         {summary.count_status(ComplianceStatus.PAS_A_JOUR)}"
        )
        print(f"❌ Failed:                 {len(summary.failed)}")


def run_load_calendar(
    store: SqlStore, config: Dict[str, Any], calendar_path: Path
) -> int:
    """Replace the stored calendar with the entries of ``calendar_path``.

    Returns
    -------
    int
        Number of calendar entries loaded.
    """
    calendar_config = config.get("calendar", {}) or {}
    entries = load_calendar(
        calendar_path,
        reject_duplicate_doses=calendar_config.get("reject_duplicate_doses", False),
    )
    store.replace_calendar(entries)
    print(f"📅 Calendar entries loaded: {len(entries)} from {calendar_path}")
    return len(entries)


def run_load_roster(store: SqlStore, roster_path: Path) -> int:
    """Register the children of a roster file.

    Returns
    -------
    int
        Number of children registered.
    """
    result = load_roster(roster_path)
    with store.transaction():
        for child in result.children:
            store.add_child(child)

    if result.warnings:
        print("Warnings detected while reading the roster:")
        for warning in result.warnings:
            print(f" - {warning}")
    print(f"👥 Children registered: {len(result.children)}")
    return len(result.children)


def run_rebuild(
    store: SqlStore,
    config: Dict[str, Any],
    child_ids: Optional[Sequence[str]] = None,
) -> BatchSummary:
    """Rebuild every child, or only ``child_ids``, with the configured options."""
    rebuild_config = config.get("rebuild", {}) or {}
    max_workers = rebuild_config.get("max_workers", 1)
    fail_fast = rebuild_config.get("fail_fast", True)

    if child_ids:
        summary = rebuild_many(
            store, child_ids, max_workers=max_workers, fail_fast=fail_fast
        )
        missing = [
            child_id
            for child_id in child_ids
            if child_id not in summary.failed
            and all(result.child_id != child_id for result in summary.results)
        ]
        for child_id in missing:
            print(f"Child {child_id} not found; skipped.")
    else:
        summary = rebuild_all(store, max_workers=max_workers, fail_fast=fail_fast)

    print(
        f"Rebuilt {summary.processed} child(ren): "
        f"{summary.count_status(ComplianceStatus.PAS_A_JOUR)} not up to date."
    )
    for child_id, message in summary.failed.items():
        print(f" - Failed child {child_id}: {message}")
    return summary


def run_report(
    store: SqlStore,
    config: Dict[str, Any],
    summary: BatchSummary,
    output_dir: Path,
    run_id: str,
) -> Optional[Path]:
    """Write the CSV report of the rebuilt children when reporting is enabled."""
    report_config = config.get("report", {}) or {}
    if not report_config.get("enabled", True):
        print("Report disabled in configuration")
        return None

    child_ids = [result.child_id for result in summary.results]
    report = build_report(
        store, child_ids, language=report_config.get("language") or "en"
    )
    report_path = write_report(report, output_dir, run_id)
    print(f"📄 Report: {report_path}")
    return report_path


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the command-line orchestrator."""
    args = parse_args(argv)

    output_dir = args.output_dir.resolve()
    config_dir = args.config_dir.resolve()
    run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")

    try:
        config = load_config(config_dir / "parameters.yaml")
    except (FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print_header(args.command, run_id)
    log_path = configure_logging(output_dir, run_id)

    total_start = time.time()
    step_times: List[Tuple[str, float]] = []
    summary: Optional[BatchSummary] = None

    try:
        store = open_store(config)

        if args.command == "load":
            step_start = time.time()
            print_step(1, "Loading calendar")
            calendar_path = resolve_calendar_path(config, config_dir, args.calendar)
            run_load_calendar(store, config, calendar_path)
            step_duration = time.time() - step_start
            step_times.append(("Calendar Load", step_duration))
            print_step_complete(1, "Calendar load", step_duration)

            if args.roster is not None:
                step_start = time.time()
                print_step(2, "Loading roster")
                run_load_roster(store, args.roster)
                step_duration = time.time() - step_start
                step_times.append(("Roster Load", step_duration))
                print_step_complete(2, "Roster load", step_duration)
            else:
                print("Roster load skipped (no --roster given).")
        else:
            step_start = time.time()
            print_step(1, "Rebuilding buckets")
            summary = run_rebuild(store, config, args.child_ids)
            step_duration = time.time() - step_start
            step_times.append(("Bucket Rebuild", step_duration))
            print_step_complete(1, "Bucket rebuild", step_duration)

            step_start = time.time()
            print_step(2, "Writing report")
            if run_report(store, config, summary, output_dir, run_id) is not None:
                step_duration = time.time() - step_start
                step_times.append(("Report", step_duration))
                print_step_complete(2, "Report", step_duration)

        print_summary(step_times, time.time() - total_start, summary)
        print(f"Log written to {log_path}")

    except Exception as exc:
        LOG.exception("Run failed")
        print(f"\n❌ Run failed: {exc}", file=sys.stderr)
        traceback.print_exc()
        return 1

    if summary is not None and summary.failed:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
