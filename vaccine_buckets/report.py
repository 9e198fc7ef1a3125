"""Per-child summary of bucket state after a rebuild.

Produces one row per child with the compliance status, the number of rows
in each bucket and the next Due date (localized with Babel), and writes it
as CSV next to the rebuild logs.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
from babel.dates import format_date

from .data_models import DoseRecord, group_records
from .enums import BucketState, Language
from .store import BucketStore

LOG = logging.getLogger(__name__)

LOCALE_MAP = {"en": "en_US", "fr": "fr_FR"}

REPORT_COLUMNS = [
    "child_id",
    "status",
    "due",
    "late",
    "overdue",
    "scheduled",
    "completed",
    "next_due_date",
    "next_due_display",
]


def format_display_date(value: Optional[datetime], language: str) -> str:
    """Format a date in long, locale-specific form ("" for None).

    Examples
    --------
    >>> format_display_date(datetime(2025, 8, 31), "fr")
    '31 août 2025'
    """
    if value is None:
        return ""
    locale = LOCALE_MAP[Language.from_string(language).value]
    return format_date(value.date(), format="long", locale=locale)


def _next_due(records: Sequence[DoseRecord]) -> Optional[datetime]:
    dates = [record.target_date for record in records if record.target_date is not None]
    return min(dates) if dates else None


def build_report(
    store: BucketStore,
    child_ids: Optional[Sequence[Any]] = None,
    language: str = "en",
) -> pd.DataFrame:
    """Summarize the bucket state of children.

    Parameters
    ----------
    store : BucketStore
        Store to read from.
    child_ids : Sequence[Any], optional
        Children to include. Defaults to every child in the store.
    language : str
        Language used for ``next_due_display`` ('en' or 'fr').

    Returns
    -------
    pd.DataFrame
        One row per existing child, columns ``REPORT_COLUMNS``.
    """
    if child_ids is None:
        child_ids = store.list_child_ids()

    rows: List[Dict[str, Any]] = []
    for child_id in child_ids:
        snapshot = store.get_child(child_id)
        if snapshot is None:
            continue
        grouped = group_records(snapshot.records)
        next_due = _next_due(grouped[BucketState.DUE])
        rows.append(
            {
                "child_id": snapshot.child.id,
                "status": snapshot.child.status.value,
                "due": len(grouped[BucketState.DUE]),
                "late": len(grouped[BucketState.LATE]),
                "overdue": len(grouped[BucketState.OVERDUE]),
                "scheduled": len(grouped[BucketState.SCHEDULED]),
                "completed": len(grouped[BucketState.COMPLETED]),
                "next_due_date": next_due.date().isoformat() if next_due else "",
                "next_due_display": format_display_date(next_due, language),
            }
        )

    return pd.DataFrame(rows, columns=REPORT_COLUMNS)


def write_report(report: pd.DataFrame, output_dir: Path, run_id: str) -> Path:
    """Write a report DataFrame to ``<output_dir>/reports/rebuild_<run_id>.csv``."""
    report_dir = Path(output_dir) / "reports"
    report_dir.mkdir(parents=True, exist_ok=True)
    report_path = report_dir / f"rebuild_{run_id}.csv"
    report.to_csv(report_path, index=False, encoding="utf-8")
    LOG.info("Wrote rebuild report for %d children to %s", len(report), report_path)
    return report_path
