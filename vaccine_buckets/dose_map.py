"""Build per-vaccine dose descriptors from the vaccination calendar.

Each calendar entry carries an age window and a list of dose assignments. The
dose map flattens these into ``vaccine_id -> dose number -> DoseDescriptor``.

**Ordering contract:**

Dose numbers omitted from an assignment are inferred from a per-vaccine
counter that advances across all entries in input order. Stores therefore
return calendar entries in a stable, documented order (see ``store.py``), and
the same calendar always yields the same map.

**Duplicate definitions:**

A (vaccine, dose) pair defined twice is silently overwritten by the later
entry. ``find_duplicate_definitions`` reports such pairs so the configuration
layer can warn about them or reject the calendar.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .data_models import CalendarEntry, DoseDescriptor, DoseMap, Vaccine

LOG = logging.getLogger(__name__)


def parse_dose_number(raw: Any) -> Optional[int]:
    """Return ``max(1, floor(raw))`` for numeric input, else None."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        numeric = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(numeric):
        return None
    return max(1, math.floor(numeric))


def _resolve_dose_numbers(
    entries: Iterable[CalendarEntry],
) -> List[Tuple[CalendarEntry, Any, int]]:
    """Yield (entry, vaccine_id, dose number) for every assignment, in order."""
    counters: Dict[Any, int] = defaultdict(int)
    resolved: List[Tuple[CalendarEntry, Any, int]] = []

    for entry in entries:
        for assignment in entry.dose_assignments:
            vaccine_id = assignment.vaccine_id
            dose_number = parse_dose_number(assignment.dose_number)
            if dose_number is None:
                # The counter advances even for assignments skipped below.
                counters[vaccine_id] += 1
                dose_number = counters[vaccine_id]

            if vaccine_id is None:
                continue
            resolved.append((entry, vaccine_id, dose_number))

    return resolved


def build_dose_map(entries: Iterable[CalendarEntry]) -> DoseMap:
    """Build the dose map of a calendar.

    Parameters
    ----------
    entries : Iterable[CalendarEntry]
        Calendar entries in their stable store order.

    Returns
    -------
    DoseMap
        ``vaccine_id -> {dose_number: DoseDescriptor}``. Later entries
        overwrite earlier ones for the same (vaccine, dose).

    Examples
    --------
    >>> polio = Vaccine(id="polio")
    >>> entry = CalendarEntry(
    ...     id="cal-6w", age_unit=AgeUnit.WEEKS, max_age=6,
    ...     dose_assignments=(DoseAssignment(polio),),
    ... )
    >>> build_dose_map([entry])["polio"][1].calendar_id
    'cal-6w'
    """
    dose_map: DoseMap = {}
    for entry, vaccine_id, dose_number in _resolve_dose_numbers(entries):
        descriptors = dose_map.setdefault(vaccine_id, {})
        if dose_number in descriptors:
            LOG.debug(
                "Dose %s of vaccine %s redefined by calendar entry %s (was %s)",
                dose_number,
                vaccine_id,
                entry.id,
                descriptors[dose_number].calendar_id,
            )
        descriptors[dose_number] = DoseDescriptor(
            calendar_id=entry.id,
            age_unit=entry.age_unit,
            specific_age=entry.specific_age,
            min_age=entry.min_age,
            max_age=entry.max_age,
            description=entry.description,
        )
    return dose_map


def build_vaccine_metadata(entries: Iterable[CalendarEntry]) -> Dict[Any, Vaccine]:
    """Collect the first-seen metadata of every vaccine referenced by the calendar."""
    vaccines: Dict[Any, Vaccine] = {}
    for entry in entries:
        for assignment in entry.dose_assignments:
            vaccine = assignment.vaccine
            if vaccine.id is None or vaccine.id in vaccines:
                continue
            vaccines[vaccine.id] = vaccine
    return vaccines


def get_dose_descriptor(
    dose_map: DoseMap, vaccine_id: Any, dose_number: Optional[int]
) -> Optional[DoseDescriptor]:
    """Look up the descriptor of a dose, falling back to the last defined dose.

    Doses beyond the configured course (e.g. a booster recorded as dose 4 of a
    three-dose calendar) resolve to the descriptor of the highest defined dose.

    Returns
    -------
    Optional[DoseDescriptor]
        None when the vaccine has no descriptors or the dose number is empty.
    """
    if not dose_map or vaccine_id is None or not dose_number:
        return None

    descriptors = dose_map.get(vaccine_id)
    if not descriptors:
        return None

    if dose_number in descriptors:
        return descriptors[dose_number]
    return descriptors[max(descriptors)]


def find_duplicate_definitions(
    entries: Iterable[CalendarEntry],
) -> List[Tuple[Any, int, List[Any]]]:
    """Report (vaccine, dose) pairs defined by more than one assignment.

    Returns
    -------
    List[Tuple[Any, int, List[Any]]]
        ``(vaccine_id, dose_number, [calendar ids in order])`` for each
        duplicated pair, sorted by first occurrence.
    """
    seen: Dict[Tuple[Any, int], List[Any]] = {}
    for entry, vaccine_id, dose_number in _resolve_dose_numbers(entries):
        seen.setdefault((vaccine_id, dose_number), []).append(entry.id)

    return [
        (vaccine_id, dose_number, calendar_ids)
        for (vaccine_id, dose_number), calendar_ids in seen.items()
        if len(calendar_ids) > 1
    ]
