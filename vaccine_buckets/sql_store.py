"""SQLAlchemy-backed bucket store.

All five bucket states share one table, ``child_dose_states``, with a unique
constraint on (child_id, vaccine_id, calendar_id, dose) and a ``state``
column, so the database itself refuses a dose key held by two states.

Identifiers are stored as strings. Datetimes are stored as naive UTC and read
back as aware UTC datetimes.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional, Sequence

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    relationship,
    selectinload,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

from .age import as_utc
from .data_models import (
    CalendarEntry,
    Child,
    ChildSnapshot,
    DoseAssignment,
    DoseKey,
    DoseRecord,
    Vaccine,
)
from .enums import AgeUnit, BucketState, ComplianceStatus, Gender
from .errors import BucketConflictError
from .store import check_computed_rows

LOG = logging.getLogger(__name__)

COMPUTED_STATES = [BucketState.DUE.value, BucketState.LATE.value]


# Shared declarative base for the bucket tables.
class Base(DeclarativeBase):
    pass


class VaccineRow(Base):
    __tablename__ = "vaccines"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    # NULL = universal vaccine
    gender: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)
    doses_required: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class CalendarRow(Base):
    __tablename__ = "vaccine_calendars"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Stable processing order; dose number inference depends on it.
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    age_unit: Mapped[str] = mapped_column(String, nullable=False, default="DAYS")
    specific_age: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    min_age: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    max_age: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    assignments: Mapped[List["DoseAssignmentRow"]] = relationship(
        back_populates="calendar",
        cascade="all, delete-orphan",
        order_by="DoseAssignmentRow.position",
    )


class DoseAssignmentRow(Base):
    __tablename__ = "calendar_dose_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    calendar_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("vaccine_calendars.id", ondelete="CASCADE"),
        nullable=False,
    )
    vaccine_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("vaccines.id", ondelete="CASCADE"),
        nullable=False,
    )
    dose_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    calendar: Mapped[CalendarRow] = relationship(back_populates="assignments")
    vaccine: Mapped[VaccineRow] = relationship()


class ChildRow(Base):
    __tablename__ = "children"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    birth_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    gender: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=ComplianceStatus.A_JOUR.value
    )


class DoseStateRow(Base):
    __tablename__ = "child_dose_states"
    __table_args__ = (
        UniqueConstraint(
            "child_id", "vaccine_id", "calendar_id", "dose", name="uq_child_dose_state"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    child_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("children.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    vaccine_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("vaccines.id", ondelete="CASCADE"),
        nullable=False,
    )
    calendar_id: Mapped[Optional[str]] = mapped_column(
        String,
        ForeignKey("vaccine_calendars.id", ondelete="SET NULL"),
        nullable=True,
    )
    dose: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    state: Mapped[str] = mapped_column(String, nullable=False)
    target_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


def _to_db_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return as_utc(value).replace(tzinfo=None)


def _from_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return as_utc(value)


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _vaccine_from_row(row: VaccineRow) -> Vaccine:
    return Vaccine(
        id=row.id,
        gender=Gender.from_string(row.gender),
        doses_required=row.doses_required,
        name=row.name,
    )


def _record_from_row(row: DoseStateRow) -> DoseRecord:
    return DoseRecord(
        child_id=row.child_id,
        vaccine_id=row.vaccine_id,
        calendar_id=row.calendar_id,
        dose=row.dose,
        state=BucketState.from_string(row.state),
        target_date=_from_db_datetime(row.target_date),
    )


def _row_from_record(record: DoseRecord) -> DoseStateRow:
    return DoseStateRow(
        child_id=str(record.child_id),
        vaccine_id=str(record.vaccine_id),
        calendar_id=_optional_str(record.calendar_id),
        dose=record.dose,
        state=record.state.value,
        target_date=_to_db_datetime(record.target_date),
    )


def _assignment_rows(entry: CalendarEntry) -> List[DoseAssignmentRow]:
    return [
        DoseAssignmentRow(
            vaccine_id=str(assignment.vaccine_id),
            dose_number=assignment.dose_number,
            position=index,
        )
        for index, assignment in enumerate(entry.dose_assignments)
    ]


class SqlStore:
    """Relational ``BucketStore`` on top of a SQLAlchemy engine.

    One ``Session`` is opened per transaction and bound to the calling
    thread; calls made outside ``transaction()`` run in their own short
    transaction.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        self._local = threading.local()

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "SqlStore":
        """Create a store from a database URL.

        In-memory SQLite URLs share a single connection across threads so
        that every session sees the same database.
        """
        kwargs: dict = {"echo": echo}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        return cls(create_engine(url, **kwargs))

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)
        LOG.info("Bucket tables ready on %s", self.engine.url)

    @contextmanager
    def transaction(self) -> Iterator["SqlStore"]:
        if getattr(self._local, "session", None) is not None:
            yield self
            return

        session = self._session_factory()
        self._local.session = session
        try:
            with session.begin():
                yield self
        finally:
            self._local.session = None
            session.close()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self.transaction():
            yield self._local.session

    # ------------------------------------------------------------------
    # Engine interface
    # ------------------------------------------------------------------

    def list_calendar_entries(self) -> List[CalendarEntry]:
        with self._session() as session:
            rows = session.scalars(
                select(CalendarRow)
                .options(
                    selectinload(CalendarRow.assignments).selectinload(
                        DoseAssignmentRow.vaccine
                    )
                )
                .order_by(CalendarRow.position, CalendarRow.id)
            ).all()
            return [
                CalendarEntry(
                    id=row.id,
                    age_unit=AgeUnit.from_string(row.age_unit),
                    min_age=row.min_age if row.min_age is not None else 0,
                    max_age=row.max_age,
                    specific_age=row.specific_age,
                    description=row.description,
                    dose_assignments=tuple(
                        DoseAssignment(
                            vaccine=_vaccine_from_row(assignment.vaccine),
                            dose_number=assignment.dose_number,
                        )
                        for assignment in row.assignments
                    ),
                )
                for row in rows
            ]

    def get_child(self, child_id: Any) -> Optional[ChildSnapshot]:
        with self._session() as session:
            row = session.get(ChildRow, str(child_id))
            if row is None:
                return None
            records = session.scalars(
                select(DoseStateRow)
                .where(DoseStateRow.child_id == row.id)
                .order_by(DoseStateRow.id)
            ).all()
            child = Child(
                id=row.id,
                birth_date=as_utc(row.birth_date),
                gender=Gender.from_string(row.gender),
                status=ComplianceStatus(row.status),
            )
            return ChildSnapshot(
                child=child, records=tuple(_record_from_row(r) for r in records)
            )

    def list_child_ids(self) -> List[str]:
        with self._session() as session:
            return list(session.scalars(select(ChildRow.id).order_by(ChildRow.id)))

    def replace_computed(
        self,
        child_id: Any,
        due: Sequence[DoseRecord],
        late: Sequence[DoseRecord],
    ) -> None:
        check_computed_rows(child_id, due, late)
        with self._session() as session:
            session.execute(
                delete(DoseStateRow).where(
                    DoseStateRow.child_id == str(child_id),
                    DoseStateRow.state.in_(COMPUTED_STATES),
                )
            )
            session.add_all(_row_from_record(row) for row in [*due, *late])
            try:
                session.flush()
            except IntegrityError as exc:
                raise BucketConflictError(
                    f"Computed rows of child {child_id} collide with existing dose keys"
                ) from exc

    def count_records(self, child_id: Any, state: BucketState) -> int:
        with self._session() as session:
            return session.scalar(
                select(func.count())
                .select_from(DoseStateRow)
                .where(
                    DoseStateRow.child_id == str(child_id),
                    DoseStateRow.state == state.value,
                )
            )

    def set_status(self, child_id: Any, status: ComplianceStatus) -> None:
        with self._session() as session:
            session.execute(
                update(ChildRow)
                .where(ChildRow.id == str(child_id))
                .values(status=status.value)
            )

    # ------------------------------------------------------------------
    # Owning-flow helpers
    # ------------------------------------------------------------------

    def add_vaccine(self, vaccine: Vaccine) -> None:
        with self._session() as session:
            session.merge(
                VaccineRow(
                    id=str(vaccine.id),
                    name=vaccine.name,
                    gender=vaccine.gender.value if vaccine.gender else None,
                    doses_required=vaccine.doses_required,
                )
            )
            session.flush()

    def add_calendar_entry(self, entry: CalendarEntry, position: Optional[int] = None) -> None:
        """Insert a calendar entry and its assignments.

        Vaccines referenced by the assignments are upserted. Without an
        explicit ``position``, the entry is appended after the existing ones.
        """
        with self._session() as session:
            if position is None:
                current = session.scalar(select(func.max(CalendarRow.position)))
                position = 0 if current is None else current + 1

            for assignment in entry.dose_assignments:
                self.add_vaccine(assignment.vaccine)

            row = CalendarRow(
                id=str(entry.id),
                position=position,
                age_unit=entry.age_unit.value,
                specific_age=entry.specific_age,
                min_age=entry.min_age if entry.min_age is not None else 0,
                max_age=entry.max_age,
                description=entry.description,
            )
            row.assignments = _assignment_rows(entry)
            session.add(row)
            session.flush()

    def replace_calendar(self, entries: Sequence[CalendarEntry]) -> None:
        """Replace the whole calendar, keeping ``entries`` order as positions.

        Entries are updated in place by id so bucket rows keep their
        ``calendar_id``; only entries missing from ``entries`` are deleted.
        Existing bucket rows are left in place; rebuild the children afterwards.
        """
        with self._session() as session:
            existing = {row.id: row for row in session.scalars(select(CalendarRow))}
            wanted = {str(entry.id) for entry in entries}
            for calendar_id, row in existing.items():
                if calendar_id not in wanted:
                    session.delete(row)
            session.flush()

            for position, entry in enumerate(entries):
                row = existing.get(str(entry.id))
                if row is None:
                    self.add_calendar_entry(entry, position=position)
                    continue
                for assignment in entry.dose_assignments:
                    self.add_vaccine(assignment.vaccine)
                row.position = position
                row.age_unit = entry.age_unit.value
                row.specific_age = entry.specific_age
                row.min_age = entry.min_age if entry.min_age is not None else 0
                row.max_age = entry.max_age
                row.description = entry.description
                row.assignments = _assignment_rows(entry)
                session.flush()

    def add_child(self, child: Child) -> None:
        with self._session() as session:
            session.merge(
                ChildRow(
                    id=str(child.id),
                    birth_date=_to_db_datetime(child.birth_date),
                    gender=child.gender.value if child.gender else None,
                    status=child.status.value,
                )
            )

    def put_record(self, record: DoseRecord) -> None:
        """Insert or update a bucket row (same rules as ``InMemoryStore.put_record``)."""
        with self._session() as session:
            if session.get(ChildRow, str(record.child_id)) is None:
                raise KeyError(f"Unknown child: {record.child_id}")
            existing = self._find_row(session, record.child_id, record.key)
            if existing is not None:
                existing_state = BucketState.from_string(existing.state)
                if not existing_state.is_computed and existing_state is not record.state:
                    raise BucketConflictError(
                        f"Dose {record.key} of child {record.child_id} is already "
                        f"{existing_state.value}"
                    )
                existing.state = record.state.value
                existing.target_date = _to_db_datetime(record.target_date)
            else:
                session.add(_row_from_record(record))
            session.flush()

    def delete_record(self, child_id: Any, key: DoseKey) -> bool:
        with self._session() as session:
            existing = self._find_row(session, child_id, key)
            if existing is None:
                return False
            session.delete(existing)
            session.flush()
            return True

    def records_for(self, child_id: Any) -> List[DoseRecord]:
        snapshot = self.get_child(child_id)
        return list(snapshot.records) if snapshot is not None else []

    @staticmethod
    def _find_row(session: Session, child_id: Any, key: DoseKey) -> Optional[DoseStateRow]:
        vaccine_id, calendar_id, dose = key
        calendar_clause = (
            DoseStateRow.calendar_id.is_(None)
            if calendar_id is None
            else DoseStateRow.calendar_id == str(calendar_id)
        )
        return session.scalars(
            select(DoseStateRow).where(
                DoseStateRow.child_id == str(child_id),
                DoseStateRow.vaccine_id == str(vaccine_id),
                calendar_clause,
                DoseStateRow.dose == dose,
            )
        ).first()
