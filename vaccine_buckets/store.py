"""Storage interface required by the rebuild engine, plus an in-memory store.

**Contract:**

- ``transaction()`` delimits one atomic unit of work. Everything the engine
  reads and writes for a child happens inside a single transaction; an
  exception rolls the whole unit back and propagates unchanged.
- ``list_calendar_entries()`` returns entries in a stable order (insertion
  order here, ``position`` then id in ``SqlStore``). Dose number inference
  depends on this order.
- Bucket rows of one child live in a single map keyed by dose key, with the
  state as the value's tag, so a key can never be held by two states.
- ``replace_computed`` swaps all Due/Late rows of a child in one call; the
  Overdue, Scheduled and Completed rows are left untouched.

The in-memory store is thread-safe: transactions are serialized by a
re-entrant lock and rolled back from a snapshot.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence

from .data_models import (
    CalendarEntry,
    Child,
    ChildSnapshot,
    DoseKey,
    DoseRecord,
)
from .enums import BucketState, ComplianceStatus
from .errors import BucketConflictError

LOG = logging.getLogger(__name__)


class BucketStore(Protocol):
    """Collaborator interface consumed by the rebuild engine."""

    def transaction(self) -> Any: ...

    def list_calendar_entries(self) -> List[CalendarEntry]: ...

    def get_child(self, child_id: Any) -> Optional[ChildSnapshot]: ...

    def list_child_ids(self) -> List[Any]: ...

    def replace_computed(
        self,
        child_id: Any,
        due: Sequence[DoseRecord],
        late: Sequence[DoseRecord],
    ) -> None: ...

    def count_records(self, child_id: Any, state: BucketState) -> int: ...

    def set_status(self, child_id: Any, status: ComplianceStatus) -> None: ...


def check_computed_rows(
    child_id: Any, due: Sequence[DoseRecord], late: Sequence[DoseRecord]
) -> None:
    """Validate rows handed to ``replace_computed``.

    Raises
    ------
    ValueError
        If a row belongs to another child or carries the wrong state.
    """
    for expected, rows in ((BucketState.DUE, due), (BucketState.LATE, late)):
        for row in rows:
            if row.child_id != child_id:
                raise ValueError(
                    f"Row for child {row.child_id} passed to rebuild of child {child_id}"
                )
            if row.state is not expected:
                raise ValueError(
                    f"Expected {expected.value} row, got {row.state.value} for {row.key}"
                )


class InMemoryStore:
    """Dictionary-backed ``BucketStore``.

    Besides the engine interface, exposes the helpers used by owning flows
    (calendar configuration, child registration, manual bucket edits).
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._entries: List[CalendarEntry] = []
        self._children: Dict[Any, Child] = {}
        self._records: Dict[Any, Dict[DoseKey, DoseRecord]] = {}

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                saved = (
                    list(self._entries),
                    dict(self._children),
                    copy.deepcopy(self._records),
                )
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self._entries, self._children, self._records = saved
                    LOG.debug("In-memory transaction rolled back")
                raise
            finally:
                self._depth -= 1

    # ------------------------------------------------------------------
    # Engine interface
    # ------------------------------------------------------------------

    def list_calendar_entries(self) -> List[CalendarEntry]:
        with self._lock:
            return list(self._entries)

    def get_child(self, child_id: Any) -> Optional[ChildSnapshot]:
        with self._lock:
            child = self._children.get(child_id)
            if child is None:
                return None
            records = tuple(self._records.get(child_id, {}).values())
            return ChildSnapshot(child=child, records=records)

    def list_child_ids(self) -> List[Any]:
        with self._lock:
            return list(self._children)

    def replace_computed(
        self,
        child_id: Any,
        due: Sequence[DoseRecord],
        late: Sequence[DoseRecord],
    ) -> None:
        check_computed_rows(child_id, due, late)
        with self.transaction():
            rows = self._records.setdefault(child_id, {})
            for key in [k for k, r in rows.items() if r.state.is_computed]:
                del rows[key]
            for row in [*due, *late]:
                existing = rows.get(row.key)
                if existing is not None:
                    raise BucketConflictError(
                        f"Dose {row.key} of child {child_id} is already "
                        f"{existing.state.value}"
                    )
                rows[row.key] = row

    def count_records(self, child_id: Any, state: BucketState) -> int:
        with self._lock:
            return sum(
                1
                for record in self._records.get(child_id, {}).values()
                if record.state is state
            )

    def set_status(self, child_id: Any, status: ComplianceStatus) -> None:
        with self._lock:
            child = self._children[child_id]
            self._children[child_id] = replace(child, status=status)

    # ------------------------------------------------------------------
    # Owning-flow helpers
    # ------------------------------------------------------------------

    def add_calendar_entry(self, entry: CalendarEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def replace_calendar(self, entries: Sequence[CalendarEntry]) -> None:
        with self._lock:
            self._entries = list(entries)

    def add_child(self, child: Child) -> None:
        with self._lock:
            self._children[child.id] = child
            self._records.setdefault(child.id, {})

    def put_record(self, record: DoseRecord) -> None:
        """Insert or update a bucket row.

        A row replaces any computed (Due/Late) row or a row of the same state
        for its key. Replacing another externally-owned state is refused.

        Raises
        ------
        KeyError
            If the child does not exist.
        BucketConflictError
            If the key is held by a different Overdue/Scheduled/Completed row.
        """
        with self._lock:
            if record.child_id not in self._children:
                raise KeyError(f"Unknown child: {record.child_id}")
            rows = self._records.setdefault(record.child_id, {})
            existing = rows.get(record.key)
            if (
                existing is not None
                and not existing.state.is_computed
                and existing.state is not record.state
            ):
                raise BucketConflictError(
                    f"Dose {record.key} of child {record.child_id} is already "
                    f"{existing.state.value}"
                )
            rows[record.key] = record

    def delete_record(self, child_id: Any, key: DoseKey) -> bool:
        with self._lock:
            return self._records.get(child_id, {}).pop(key, None) is not None

    def records_for(self, child_id: Any) -> List[DoseRecord]:
        with self._lock:
            return list(self._records.get(child_id, {}).values())
