"""Integration tests for the rebuild engine against both bucket stores.

Tests cover:
- Reference scenarios on the in-memory store and the SQL store
- Identical results from both stores for the same data
- SQL persistence details: calendar order, aware datetimes, string ids
- Unique dose keys enforced by the database
- Transaction rollback in the SQL store

Real-world significance:
- Production runs on the SQL store; tests and tools use the in-memory one,
  so both must produce exactly the same buckets
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy import create_engine, event

from tests.fixtures import sample_input
from vaccine_buckets.enums import AgeUnit, BucketState, ComplianceStatus, Gender
from vaccine_buckets.errors import BucketConflictError
from vaccine_buckets.rebuild import rebuild_all, rebuild_one
from vaccine_buckets.sql_store import SqlStore
from vaccine_buckets.status import refresh_status
from vaccine_buckets.store import InMemoryStore


@pytest.mark.integration
class TestScenariosOnEveryStore:
    """Reference scenarios run once per store implementation."""

    def test_due_within_window(self, any_store, now) -> None:
        child = sample_input.create_test_child(age_days=21)
        sample_input.populate_store(
            any_store,
            entries=sample_input.create_single_dose_calendar(),
            children=[child],
        )

        result = rebuild_one(any_store, child.id, now=now)

        records = any_store.records_for(child.id)
        assert [(r.vaccine_id, r.dose, r.state) for r in records] == [
            ("V", 1, BucketState.DUE)
        ]
        assert records[0].target_date == child.birth_date + timedelta(weeks=6)
        assert result.status == ComplianceStatus.A_JOUR

    def test_late_past_window(self, any_store, now) -> None:
        child = sample_input.create_test_child(age_days=70)
        sample_input.populate_store(
            any_store,
            entries=sample_input.create_single_dose_calendar(),
            children=[child],
        )

        rebuild_one(any_store, child.id, now=now)

        assert [r.state for r in any_store.records_for(child.id)] == [BucketState.LATE]
        assert any_store.get_child(child.id).child.status == ComplianceStatus.PAS_A_JOUR

    def test_completed_dose(self, any_store, now) -> None:
        child = sample_input.create_test_child(age_days=21)
        completed = sample_input.create_test_record(
            state=BucketState.COMPLETED, target_date=now - timedelta(days=1)
        )
        sample_input.populate_store(
            any_store,
            entries=sample_input.create_single_dose_calendar(),
            children=[child],
            records=[completed],
        )

        rebuild_one(any_store, child.id, now=now)

        assert any_store.records_for(child.id) == [completed]
        assert any_store.get_child(child.id).child.status == ComplianceStatus.A_JOUR

    def test_gender_restricted(self, any_store, now) -> None:
        hpv = sample_input.create_test_vaccine("V", gender=Gender.FEMALE)
        child = sample_input.create_test_child(age_days=21, gender=Gender.MALE)
        sample_input.populate_store(
            any_store,
            entries=sample_input.create_single_dose_calendar(hpv),
            children=[child],
        )

        rebuild_one(any_store, child.id, now=now)

        assert any_store.records_for(child.id) == []

    def test_empty_calendar(self, any_store, now) -> None:
        child = sample_input.create_test_child(age_days=70)
        sample_input.populate_store(
            any_store,
            entries=sample_input.create_single_dose_calendar(),
            children=[child],
        )
        rebuild_one(any_store, child.id, now=now)
        any_store.replace_calendar([])

        result = rebuild_one(any_store, child.id, now=now)

        assert any_store.records_for(child.id) == []
        assert result.status == ComplianceStatus.A_JOUR
        assert any_store.get_child(child.id).child.status == ComplianceStatus.A_JOUR

    def test_refresh_status(self, any_store) -> None:
        child = sample_input.create_test_child()
        sample_input.populate_store(
            any_store,
            children=[child],
            records=[sample_input.create_test_record(state=BucketState.OVERDUE)],
        )
        assert refresh_status(any_store, child.id) == ComplianceStatus.PAS_A_JOUR

    def test_precedence_conflict_refused(self, any_store) -> None:
        child = sample_input.create_test_child()
        sample_input.populate_store(
            any_store,
            children=[child],
            records=[sample_input.create_test_record(state=BucketState.COMPLETED)],
        )
        with pytest.raises(BucketConflictError):
            any_store.put_record(sample_input.create_test_record(state=BucketState.OVERDUE))


@pytest.mark.integration
class TestStoresAgree:
    def test_same_buckets_for_a_cohort(self, sql_store, now) -> None:
        """Verify both stores produce identical rows and statuses for a cohort."""
        memory_store = InMemoryStore()
        hpv = sample_input.create_test_vaccine("HPV", gender=Gender.FEMALE)
        entries = [
            *sample_input.create_three_dose_calendar(),
            sample_input.create_test_calendar_entry(
                "y9", doses=[(hpv, 1)], age_unit=AgeUnit.YEARS, min_age=9, max_age=14
            ),
        ]
        children = [
            sample_input.create_test_child("C-000", age_days=45),
            sample_input.create_test_child("C-001", age_days=77, gender=Gender.FEMALE),
            sample_input.create_test_child("C-002", age_days=160),
            sample_input.create_test_child("C-003", age_days=3700, gender=Gender.FEMALE),
        ]
        scheduled = sample_input.create_test_record(
            child_id="C-002", vaccine_id="PENTA", calendar_id="w14", dose=3,
            state=BucketState.SCHEDULED, target_date=now + timedelta(days=2),
        )
        for store in (memory_store, sql_store):
            sample_input.populate_store(
                store, entries=entries, children=children, records=[scheduled]
            )

        memory_summary = rebuild_all(memory_store, now=now)
        sql_summary = rebuild_all(sql_store, now=now)

        assert sql_summary.results == memory_summary.results
        for child in children:
            assert sorted(sql_store.records_for(child.id), key=lambda r: r.key) == sorted(
                memory_store.records_for(child.id), key=lambda r: r.key
            )


@pytest.mark.integration
class TestSqlStore:
    """SQL-specific persistence behaviour."""

    def test_calendar_round_trip_keeps_order(self, sql_store: SqlStore) -> None:
        entries = sample_input.create_three_dose_calendar()
        sql_store.replace_calendar(list(reversed(entries)))

        loaded = sql_store.list_calendar_entries()

        assert [e.id for e in loaded] == ["w14", "w10", "w6"]
        assert loaded[0].dose_assignments[0].vaccine.doses_required == 3
        assert loaded[0].dose_assignments[0].dose_number is None

    def test_add_calendar_entry_appends(self, sql_store: SqlStore) -> None:
        sql_store.replace_calendar(sample_input.create_three_dose_calendar())
        sql_store.add_calendar_entry(sample_input.create_test_calendar_entry("later"))

        assert [e.id for e in sql_store.list_calendar_entries()][-1] == "later"

    def test_child_round_trip(self, sql_store: SqlStore) -> None:
        child = sample_input.create_test_child(gender=Gender.FEMALE)
        sql_store.add_child(child)

        snapshot = sql_store.get_child(child.id)

        assert snapshot.child == child
        assert snapshot.child.birth_date.tzinfo is not None
        assert sql_store.list_child_ids() == ["C-001"]

    def test_unique_dose_key(self, sql_store: SqlStore, now) -> None:
        """Verify the database refuses a computed row over an external one."""
        sample_input.populate_store(
            sql_store,
            entries=sample_input.create_single_dose_calendar(),
            children=[sample_input.create_test_child()],
            records=[sample_input.create_test_record(state=BucketState.SCHEDULED)],
        )
        due = sample_input.create_test_record(state=BucketState.DUE)

        with pytest.raises(BucketConflictError):
            sql_store.replace_computed("C-001", [due], [])

        assert [r.state for r in sql_store.records_for("C-001")] == [
            BucketState.SCHEDULED
        ]

    def test_rollback_on_failure(self, sql_store: SqlStore) -> None:
        child = sample_input.create_test_child()
        record = sample_input.create_test_record(state=BucketState.DUE)
        sample_input.populate_store(sql_store, children=[child], records=[record])

        with pytest.raises(RuntimeError):
            with sql_store.transaction():
                sql_store.replace_computed(child.id, [], [])
                sql_store.set_status(child.id, ComplianceStatus.PAS_A_JOUR)
                raise RuntimeError("boom")

        assert sql_store.records_for(child.id) == [record]
        assert sql_store.get_child(child.id).child.status == ComplianceStatus.A_JOUR

    def test_delete_record(self, sql_store: SqlStore) -> None:
        record = sample_input.create_test_record(calendar_id=None)
        sample_input.populate_store(
            sql_store, children=[sample_input.create_test_child()], records=[record]
        )

        assert sql_store.delete_record("C-001", record.key) is True
        assert sql_store.delete_record("C-001", record.key) is False

    def test_missing_child(self, sql_store: SqlStore, now) -> None:
        assert sql_store.get_child("ghost") is None
        assert rebuild_one(sql_store, "ghost", now=now) is None


@pytest.fixture
def enforcing_sql_store(tmp_test_dir: Path) -> Generator[SqlStore, None, None]:
    """SQL store on a SQLite file with foreign key enforcement turned on."""
    engine = create_engine(f"sqlite:///{tmp_test_dir / 'enforcing.db'}")

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    store = SqlStore(engine)
    store.create_all()
    yield store
    engine.dispose()


@pytest.mark.integration
class TestCalendarReloadWithForeignKeys:
    """Calendar reloads on a database that enforces foreign keys."""

    def test_completed_dose_survives_reload(self, enforcing_sql_store, now) -> None:
        """Verify a reload keeps calendar ids on recorded doses."""
        store = enforcing_sql_store
        entries = sample_input.create_single_dose_calendar()
        completed = sample_input.create_test_record(
            state=BucketState.COMPLETED, target_date=now - timedelta(days=1)
        )
        sample_input.populate_store(
            store,
            entries=entries,
            children=[sample_input.create_test_child(age_days=21)],
            records=[completed],
        )

        store.replace_calendar(entries)
        rebuild_one(store, "C-001", now=now)

        assert store.records_for("C-001") == [completed]
        assert store.get_child("C-001").child.status == ComplianceStatus.A_JOUR

    def test_reload_updates_entries_in_place(self, enforcing_sql_store) -> None:
        store = enforcing_sql_store
        store.replace_calendar(sample_input.create_three_dose_calendar())
        wider = sample_input.create_test_calendar_entry(
            "w10", doses=[(sample_input.create_test_vaccine("PENTA", doses_required=3), 2)],
            min_age=9, max_age=15,
        )

        store.replace_calendar([sample_input.create_three_dose_calendar()[0], wider])

        loaded = store.list_calendar_entries()
        assert [e.id for e in loaded] == ["w6", "w10"]
        assert (loaded[1].min_age, loaded[1].max_age) == (9, 15)
        assert loaded[1].dose_assignments[0].dose_number == 2
