"""Unified data models for the vaccination bucket engine.

This module provides the core dataclasses shared by the dose map builder,
the rebuild engine and the storage adapters. Calendar, vaccine and child
records are read-only inputs; dose records are the single tagged-union row
type for all five bucket states.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from .enums import AgeUnit, BucketState, ComplianceStatus, Gender

DateLike = Union[date, datetime]

# (vaccine_id, calendar_id, dose)
DoseKey = Tuple[Any, Any, int]


def make_dose_key(vaccine_id: Any, calendar_id: Any, dose: Optional[int]) -> DoseKey:
    """Build the identity of a dose within one child's buckets.

    A missing dose number keys as dose 1.
    """
    return (vaccine_id, calendar_id, dose if dose is not None else 1)


@dataclass(frozen=True)
class Vaccine:
    """Vaccine metadata relevant to bucket computation.

    Fields
    ------
    id : Any
        Vaccine identifier.
    gender : Optional[Gender]
        Restriction to one gender; None means the vaccine is universal.
    doses_required : int
        Number of doses in the full course.
    name : str
        Display name, used only in reports.
    """

    id: Any
    gender: Optional[Gender] = None
    doses_required: int = 1
    name: str = ""


@dataclass(frozen=True)
class DoseAssignment:
    """Link between a calendar entry and one dose of a vaccine.

    ``dose_number`` may be None (or non-numeric), in which case the dose map
    builder infers it from a per-vaccine counter.
    """

    vaccine: Vaccine
    dose_number: Optional[Any] = None

    @property
    def vaccine_id(self) -> Any:
        return self.vaccine.id


@dataclass(frozen=True)
class CalendarEntry:
    """A configured age window associating vaccine doses with an age range.

    Fields
    ------
    id : Any
        Calendar entry identifier.
    age_unit : AgeUnit
        Unit of ``specific_age``, ``min_age`` and ``max_age``.
    min_age : float
        Lower bound of the window (inclusive). Defaults to 0.
    max_age : Optional[float]
        Upper bound of the window (inclusive); None means unbounded.
    specific_age : Optional[float]
        Target age used to compute the scheduled date; falls back to max_age.
    description : Optional[str]
        Free-text label, e.g. "6 weeks".
    dose_assignments : Tuple[DoseAssignment, ...]
        Doses administered in this window.
    """

    id: Any
    age_unit: AgeUnit = AgeUnit.DAYS
    min_age: float = 0
    max_age: Optional[float] = None
    specific_age: Optional[float] = None
    description: Optional[str] = None
    dose_assignments: Tuple[DoseAssignment, ...] = ()


@dataclass(frozen=True)
class DoseDescriptor:
    """Derived age window of one (vaccine, dose) pair. Never persisted."""

    calendar_id: Any
    age_unit: AgeUnit
    specific_age: Optional[float]
    min_age: Optional[float]
    max_age: Optional[float]
    description: Optional[str] = None


# vaccine_id -> dose number -> descriptor
DoseMap = Dict[Any, Dict[int, DoseDescriptor]]


@dataclass(frozen=True)
class Child:
    """A child whose buckets are rebuilt. Only ``status`` is engine-owned."""

    id: Any
    birth_date: DateLike
    gender: Optional[Gender] = None
    status: ComplianceStatus = ComplianceStatus.A_JOUR


@dataclass(frozen=True)
class DoseRecord:
    """One bucket row: a dose key tagged with its state.

    Fields
    ------
    child_id : Any
        Owning child.
    vaccine_id : Any
        Vaccine of the dose.
    calendar_id : Any
        Calendar entry the dose was scheduled from (may be None for records
        entered without a calendar reference).
    dose : int
        Dose number within the vaccine course.
    state : BucketState
        Which of the five buckets the row belongs to.
    target_date : Optional[datetime]
        ``scheduledFor`` of a Due row, ``dueDate`` of a Late row, the
        appointment of a Scheduled row or the administration date of a
        Completed row.
    """

    child_id: Any
    vaccine_id: Any
    calendar_id: Any
    dose: int
    state: BucketState
    target_date: Optional[datetime] = None

    @property
    def key(self) -> DoseKey:
        return make_dose_key(self.vaccine_id, self.calendar_id, self.dose)


@dataclass(frozen=True)
class ChildSnapshot:
    """A child together with its current bucket records."""

    child: Child
    records: Tuple[DoseRecord, ...] = ()

    def records_in(self, *states: BucketState) -> List[DoseRecord]:
        """Return the records held in any of ``states``."""
        return [record for record in self.records if record.state in states]

    def keys_in(self, *states: BucketState) -> FrozenSet[DoseKey]:
        """Return the dose keys held in any of ``states``."""
        return frozenset(record.key for record in self.records_in(*states))


@dataclass(frozen=True)
class RebuildContext:
    """Calendar-derived data shared by every child of a batch.

    Built once per batch by ``build_context`` and passed explicitly to each
    per-child rebuild.
    """

    entries: Tuple[CalendarEntry, ...]
    dose_map: DoseMap
    vaccines: Dict[Any, Vaccine]

    @property
    def is_empty(self) -> bool:
        return not self.entries


@dataclass(frozen=True)
class BucketPlan:
    """Computed Due/Late rows and resulting status for one child."""

    due: Tuple[DoseRecord, ...]
    late: Tuple[DoseRecord, ...]
    status: ComplianceStatus


@dataclass(frozen=True)
class RebuildResult:
    """Outcome of a single-child rebuild."""

    child_id: Any
    due_count: int
    late_count: int
    status: ComplianceStatus


@dataclass(frozen=True)
class BatchSummary:
    """Outcome of a batch rebuild.

    Parameters
    ----------
    results : List[RebuildResult]
        One entry per rebuilt child, in child id order.
    failed : Dict[Any, str]
        Child id to error message for children whose rebuild raised
        (only populated when the batch is not fail-fast).
    """

    results: List[RebuildResult] = field(default_factory=list)
    failed: Dict[Any, str] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return len(self.results)

    def count_status(self, status: ComplianceStatus) -> int:
        return sum(1 for result in self.results if result.status == status)


def group_records(records: Iterable[DoseRecord]) -> Dict[BucketState, List[DoseRecord]]:
    """Group records by state, with an empty list for every state."""
    grouped: Dict[BucketState, List[DoseRecord]] = {state: [] for state in BucketState}
    for record in records:
        grouped[record.state].append(record)
    return grouped
