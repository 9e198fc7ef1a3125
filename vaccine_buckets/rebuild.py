"""Rebuild a child's Due and Late vaccination buckets.

The rebuild is a full replace: every Due and Late row of the child is
recomputed from scratch from the calendar, the child's age and its externally
owned Overdue, Scheduled and Completed rows, then swapped in atomically
together with the child's compliance status.

**Per dose (ascending dose number, eligible vaccines only):**

- key already Completed, Scheduled or Overdue -> nothing
- ``min_age <= age <= max_age`` (``max_age`` optional) -> Due, for the
  scheduled date
- ``age > max_age`` and the scheduled date is in the past -> Late
- ``age > max_age`` but the scheduled date is still ahead (unit rounding)
  -> nothing
- ``age < min_age`` -> nothing

**Error Handling:**

- Unknown child: silent no-op, returns None
- Empty calendar: Due/Late cleared, status forced to A_JOUR
- Storage errors: transaction rolled back, error propagated unchanged
- Batch mode: fail-fast by default; callers may collect errors instead

Given the same calendar, records and ``now``, a rebuild always produces the
same rows and status.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .age import age_in_unit, as_utc, compute_scheduled_date, utc_now
from .data_models import (
    BatchSummary,
    BucketPlan,
    CalendarEntry,
    ChildSnapshot,
    DateLike,
    DoseRecord,
    RebuildContext,
    RebuildResult,
    make_dose_key,
)
from .dose_map import build_dose_map, build_vaccine_metadata, get_dose_descriptor
from .eligibility import is_eligible
from .enums import BucketState, ComplianceStatus
from .status import aggregate_status
from .store import BucketStore

LOG = logging.getLogger(__name__)

# Externally owned states that take precedence over computed ones.
PRECEDENT_STATES = (BucketState.COMPLETED, BucketState.SCHEDULED, BucketState.OVERDUE)


def build_context(entries: Iterable[CalendarEntry]) -> RebuildContext:
    """Derive the dose map and vaccine metadata of a calendar once.

    Parameters
    ----------
    entries : Iterable[CalendarEntry]
        Calendar entries in stable store order.

    Returns
    -------
    RebuildContext
        Immutable context shareable across children and threads.
    """
    entries = tuple(entries)
    return RebuildContext(
        entries=entries,
        dose_map=build_dose_map(entries),
        vaccines=build_vaccine_metadata(entries),
    )


def compute_buckets(
    snapshot: ChildSnapshot,
    context: RebuildContext,
    now: Optional[DateLike] = None,
) -> BucketPlan:
    """Compute the Due and Late rows and the status of one child.

    Pure function: reads nothing from storage and writes nothing.

    Parameters
    ----------
    snapshot : ChildSnapshot
        Child with its current bucket records. Existing Due/Late rows are
        ignored; Completed, Scheduled and Overdue keys are skipped.
    context : RebuildContext
        Calendar-derived dose map and vaccine metadata.
    now : date | datetime, optional
        Instant of the computation. Defaults to now (UTC).

    Returns
    -------
    BucketPlan
        New Due and Late rows plus the resulting compliance status.
    """
    child = snapshot.child
    instant = as_utc(now) if now is not None else utc_now()

    if context.is_empty:
        return BucketPlan(due=(), late=(), status=ComplianceStatus.A_JOUR)

    taken = snapshot.keys_in(*PRECEDENT_STATES)
    due: List[DoseRecord] = []
    late: List[DoseRecord] = []

    for vaccine_id, descriptors in context.dose_map.items():
        vaccine = context.vaccines.get(vaccine_id)
        vaccine_gender = vaccine.gender if vaccine is not None else None
        if not is_eligible(vaccine_gender, child.gender):
            continue

        for dose_number in sorted(descriptors):
            descriptor = descriptors[dose_number]
            key = make_dose_key(vaccine_id, descriptor.calendar_id, dose_number)
            if key in taken:
                continue

            age = age_in_unit(child.birth_date, descriptor.age_unit, as_of=instant)
            min_age = descriptor.min_age if descriptor.min_age is not None else 0
            max_age = descriptor.max_age
            scheduled = compute_scheduled_date(
                child.birth_date,
                descriptor.specific_age,
                max_age,
                descriptor.age_unit,
            )

            if age >= min_age and (max_age is None or age <= max_age):
                due.append(
                    DoseRecord(
                        child_id=child.id,
                        vaccine_id=vaccine_id,
                        calendar_id=descriptor.calendar_id,
                        dose=dose_number,
                        state=BucketState.DUE,
                        target_date=scheduled,
                    )
                )
            elif max_age is not None and age > max_age and scheduled < instant:
                late.append(
                    DoseRecord(
                        child_id=child.id,
                        vaccine_id=vaccine_id,
                        calendar_id=descriptor.calendar_id,
                        dose=dose_number,
                        state=BucketState.LATE,
                        target_date=scheduled,
                    )
                )

    overdue_count = len(snapshot.records_in(BucketState.OVERDUE))
    return BucketPlan(
        due=tuple(due),
        late=tuple(late),
        status=aggregate_status(len(late), overdue_count),
    )


def rebuild_one(
    store: BucketStore,
    child_id: Any,
    context: Optional[RebuildContext] = None,
    now: Optional[DateLike] = None,
) -> Optional[RebuildResult]:
    """Rebuild the Due/Late buckets and the status of one child.

    The read, the Due/Late replacement and the status update run in a single
    store transaction.

    Parameters
    ----------
    store : BucketStore
        Backing store.
    child_id : Any
        Child to rebuild.
    context : RebuildContext, optional
        Shared calendar context (batch mode). Built from the store when
        omitted.
    now : date | datetime, optional
        Instant of the rebuild. Defaults to now (UTC).

    Returns
    -------
    Optional[RebuildResult]
        Counts and status written, or None if the child does not exist.

    Raises
    ------
    Exception
        Any storage error, after the transaction has been rolled back.
    """
    with store.transaction():
        snapshot = store.get_child(child_id)
        if snapshot is None:
            LOG.debug("Rebuild skipped: child %s not found", child_id)
            return None

        if context is None:
            context = build_context(store.list_calendar_entries())

        plan = compute_buckets(snapshot, context, now)
        store.replace_computed(child_id, plan.due, plan.late)
        store.set_status(child_id, plan.status)

    LOG.debug(
        "Rebuilt child %s: %d due, %d late, status %s",
        child_id,
        len(plan.due),
        len(plan.late),
        plan.status.value,
    )
    return RebuildResult(
        child_id=child_id,
        due_count=len(plan.due),
        late_count=len(plan.late),
        status=plan.status,
    )


def rebuild_many(
    store: BucketStore,
    child_ids: Sequence[Any],
    context: Optional[RebuildContext] = None,
    now: Optional[DateLike] = None,
    max_workers: int = 1,
    fail_fast: bool = False,
) -> BatchSummary:
    """Rebuild a set of children sharing one calendar context.

    Each child is rebuilt in its own transaction; the set as a whole is not
    atomic. Children that do not exist are skipped.

    Parameters
    ----------
    store : BucketStore
        Backing store.
    child_ids : Sequence[Any]
        Children to rebuild.
    context : RebuildContext, optional
        Shared context; built once from the store when omitted.
    now : date | datetime, optional
        Instant used for every child. Defaults to now (UTC), fixed once.
    max_workers : int
        Number of children rebuilt concurrently (1 = sequential).
    fail_fast : bool
        If True, the first error propagates. Sequentially, the remaining
        children are not rebuilt; with ``max_workers > 1``, every child already
        submitted to the pool is still rebuilt and committed before the error
        is raised. If False, errors are logged and collected in
        ``BatchSummary.failed``.

    Returns
    -------
    BatchSummary
        Results in input order, plus failures.
    """
    if max_workers < 1:
        raise ValueError(f"max_workers must be positive, got {max_workers}")

    if context is None:
        context = build_context(store.list_calendar_entries())
    instant = as_utc(now) if now is not None else utc_now()

    results: Dict[Any, RebuildResult] = {}
    failed: Dict[Any, str] = {}

    def handle_error(child_id: Any, exc: Exception) -> None:
        if fail_fast:
            raise exc
        LOG.exception("Failed to rebuild vaccination buckets for child %s", child_id)
        failed[child_id] = str(exc)

    if max_workers == 1:
        for child_id in child_ids:
            try:
                result = rebuild_one(store, child_id, context, instant)
            except Exception as exc:
                handle_error(child_id, exc)
                continue
            if result is not None:
                results[child_id] = result
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(rebuild_one, store, child_id, context, instant): child_id
                for child_id in child_ids
            }
            for future in as_completed(futures):
                child_id = futures[future]
                try:
                    result = future.result()
                except Exception as exc:
                    handle_error(child_id, exc)
                    continue
                if result is not None:
                    results[child_id] = result

    ordered = [results[child_id] for child_id in child_ids if child_id in results]
    return BatchSummary(results=ordered, failed=failed)


def rebuild_all(
    store: BucketStore,
    max_workers: int = 1,
    now: Optional[DateLike] = None,
    fail_fast: bool = True,
) -> BatchSummary:
    """Rebuild every child, computing the calendar context only once.

    A failure partway through leaves already processed children rebuilt and
    later ones untouched (when ``fail_fast``), or is recorded and skipped.
    """
    entries = store.list_calendar_entries()
    context = build_context(entries)
    child_ids = store.list_child_ids()
    LOG.info(
        "Rebuilding %d children against %d calendar entries (%d vaccines)",
        len(child_ids),
        len(entries),
        len(context.dose_map),
    )

    summary = rebuild_many(
        store,
        child_ids,
        context=context,
        now=now,
        max_workers=max_workers,
        fail_fast=fail_fast,
    )
    LOG.info(
        "Rebuild complete: %d rebuilt, %d not up to date, %d failed",
        summary.processed,
        summary.count_status(ComplianceStatus.PAS_A_JOUR),
        len(summary.failed),
    )
    return summary


def resolve_record_calendar(record: DoseRecord, context: RebuildContext) -> DoseRecord:
    """Fill in the calendar entry of a record entered without one.

    Owning flows (e.g. marking a dose as completed) call this before storing a
    record so that its key matches the Due/Late row it supersedes. Doses past
    the configured course resolve to the last defined dose's calendar entry.
    Records that already reference a calendar entry, or whose vaccine has no
    descriptor, are returned unchanged.
    """
    if record.calendar_id is not None:
        return record
    descriptor = get_dose_descriptor(context.dose_map, record.vaccine_id, record.dose)
    if descriptor is None:
        return record
    return replace(record, calendar_id=descriptor.calendar_id)
