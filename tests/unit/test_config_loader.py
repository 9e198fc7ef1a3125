"""Unit tests for config_loader module - parameters and calendar files.

Tests cover:
- Loading parameters.yaml and the default location
- Validation of database, calendar, rebuild and report sections
- Calendar parsing: vaccines, entries, string and mapping doses, numeric ages
- Duplicate (vaccine, dose) definitions: warning or rejection
- The shipped routine calendar

Real-world significance:
- A typo in configuration must fail before any child is rebuilt
- The calendar file is the only source of dose windows
"""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
import yaml

from tests.fixtures import sample_input
from vaccine_buckets import config_loader
from vaccine_buckets.dose_map import build_dose_map
from vaccine_buckets.enums import AgeUnit, Gender
from vaccine_buckets.errors import ConfigurationError


def _write_yaml(path: Path, payload) -> Path:
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return path


@pytest.mark.unit
class TestLoadConfig:
    """Unit tests for load_config."""

    def test_loads_valid_file(self, tmp_test_dir: Path) -> None:
        path = _write_yaml(
            tmp_test_dir / "parameters.yaml",
            sample_input.create_test_parameters("sqlite://"),
        )
        config = config_loader.load_config(path)
        assert config["database"]["url"] == "sqlite://"
        assert config["rebuild"]["max_workers"] == 1

    def test_missing_file(self, tmp_test_dir: Path) -> None:
        with pytest.raises(FileNotFoundError):
            config_loader.load_config(tmp_test_dir / "missing.yaml")

    def test_empty_file_is_valid(self, tmp_test_dir: Path) -> None:
        path = tmp_test_dir / "parameters.yaml"
        path.write_text("", encoding="utf-8")
        assert config_loader.load_config(path) == {}

    def test_default_config_is_valid(self) -> None:
        """Verify the shipped parameters.yaml loads and validates."""
        config = config_loader.load_config()
        assert config["calendar"]["path"] == "calendar.yaml"


@pytest.mark.unit
class TestValidateConfig:
    """Unit tests for validate_config."""

    @pytest.mark.parametrize(
        "config, message",
        [
            ({"database": {"url": ""}}, "database.url"),
            ({"database": {"url": 5}}, "database.url"),
            ({"database": {"echo": "yes"}}, "database.echo"),
            ({"calendar": {"path": 3}}, "calendar.path"),
            ({"calendar": {"reject_duplicate_doses": 1}}, "reject_duplicate_doses"),
            ({"rebuild": {"max_workers": 0}}, "must be positive"),
            ({"rebuild": {"max_workers": "4"}}, "must be an integer"),
            ({"rebuild": {"max_workers": True}}, "must be an integer"),
            ({"rebuild": {"fail_fast": "no"}}, "rebuild.fail_fast"),
            ({"report": {"enabled": "true"}}, "report.enabled"),
            ({"report": {"language": "es"}}, "Invalid report.language"),
        ],
    )
    def test_invalid_values(self, config, message: str) -> None:
        with pytest.raises(ConfigurationError, match=message):
            config_loader.validate_config(config)

    def test_configuration_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            config_loader.validate_config({"rebuild": {"max_workers": -1}})

    def test_empty_sections_use_defaults(self) -> None:
        config_loader.validate_config(
            {"database": None, "calendar": None, "rebuild": None, "report": None}
        )


@pytest.mark.unit
class TestLoadCalendar:
    """Unit tests for load_calendar."""

    def test_parses_entries_in_file_order(self, tmp_test_dir: Path) -> None:
        path = sample_input.write_calendar_file(
            sample_input.create_calendar_payload(), tmp_test_dir
        )

        entries = config_loader.load_calendar(path)

        assert [e.id for e in entries] == ["w6", "w10", "y9"]
        w6 = entries[0]
        assert w6.age_unit == AgeUnit.WEEKS
        assert (w6.min_age, w6.max_age, w6.specific_age) == (6, 9, 6)
        assert w6.description == "6 weeks"
        assert w6.dose_assignments[0].vaccine_id == "PENTA"
        assert w6.dose_assignments[0].dose_number is None

    def test_vaccine_metadata_attached(self, tmp_test_dir: Path) -> None:
        path = sample_input.write_calendar_file(
            sample_input.create_calendar_payload(), tmp_test_dir
        )
        hpv = config_loader.load_calendar(path)[2].dose_assignments[0]

        assert hpv.vaccine.gender == Gender.FEMALE
        assert hpv.vaccine.name == "Human papillomavirus"
        assert hpv.dose_number == 1

    def test_defaults(self, tmp_test_dir: Path) -> None:
        """Verify missing id, unit and min_age get their defaults."""
        path = sample_input.write_calendar_file(
            {"vaccines": [{"id": "BCG"}], "entries": [{"doses": ["BCG"]}]},
            tmp_test_dir,
        )
        entry = config_loader.load_calendar(path)[0]

        assert entry.id == "entry-1"
        assert entry.age_unit == AgeUnit.DAYS
        assert entry.min_age == 0
        assert entry.max_age is None
        assert entry.dose_assignments[0].vaccine.name == "BCG"

    def test_unknown_vaccine(self, tmp_test_dir: Path) -> None:
        path = sample_input.write_calendar_file(
            {"vaccines": [], "entries": [{"id": "e1", "doses": ["XYZ"]}]},
            tmp_test_dir,
        )
        with pytest.raises(ConfigurationError, match="unknown vaccine 'XYZ'"):
            config_loader.load_calendar(path)

    @pytest.mark.parametrize("key", ["min_age", "max_age", "specific_age"])
    def test_non_numeric_age_rejected(self, tmp_test_dir: Path, key: str) -> None:
        """Verify a quoted age fails at load time instead of during rebuilds."""
        entry = {"id": "e1", "age_unit": "WEEKS", "min_age": 0, "max_age": 6, key: "6"}
        path = sample_input.write_calendar_file(
            {"vaccines": [{"id": "V"}], "entries": [{**entry, "doses": ["V"]}]},
            tmp_test_dir,
        )
        with pytest.raises(ConfigurationError, match=f"e1: {key} must be a number"):
            config_loader.load_calendar(path)

    def test_fractional_ages_accepted(self, tmp_test_dir: Path) -> None:
        path = sample_input.write_calendar_file(
            {
                "vaccines": [{"id": "V"}],
                "entries": [
                    {"id": "e1", "min_age": 1.5, "max_age": 2, "doses": ["V"]}
                ],
            },
            tmp_test_dir,
        )
        entry = config_loader.load_calendar(path)[0]
        assert (entry.min_age, entry.max_age) == (1.5, 2)

    def test_invalid_vaccine_gender(self, tmp_test_dir: Path) -> None:
        path = sample_input.write_calendar_file(
            {"vaccines": [{"id": "HPV", "gender": "girls"}], "entries": []},
            tmp_test_dir,
        )
        with pytest.raises(ConfigurationError, match="Vaccine HPV"):
            config_loader.load_calendar(path)

    def test_vaccine_without_id(self, tmp_test_dir: Path) -> None:
        path = sample_input.write_calendar_file(
            {"vaccines": [{"name": "nameless"}]}, tmp_test_dir
        )
        with pytest.raises(ConfigurationError, match="requires an id"):
            config_loader.load_calendar(path)

    def test_non_mapping_file(self, tmp_test_dir: Path) -> None:
        path = tmp_test_dir / "calendar.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="must contain a mapping"):
            config_loader.load_calendar(path)

    def test_missing_file(self, tmp_test_dir: Path) -> None:
        with pytest.raises(FileNotFoundError):
            config_loader.load_calendar(tmp_test_dir / "none.yaml")


@pytest.mark.unit
class TestDuplicateDoses:
    """Unit tests for duplicate dose handling in load_calendar."""

    @pytest.fixture
    def duplicate_calendar(self, tmp_test_dir: Path) -> Path:
        return sample_input.write_calendar_file(
            {
                "vaccines": [{"id": "V"}],
                "entries": [
                    {"id": "a", "doses": [{"vaccine": "V", "dose": 1}]},
                    {"id": "b", "doses": [{"vaccine": "V", "dose": 1}]},
                ],
            },
            tmp_test_dir,
        )

    def test_warns_by_default(
        self, duplicate_calendar: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING):
            entries = config_loader.load_calendar(duplicate_calendar)

        assert len(entries) == 2
        assert "Dose 1 of vaccine V is defined by several calendar entries: a, b" in caplog.text

    def test_rejected_when_configured(self, duplicate_calendar: Path) -> None:
        with pytest.raises(ConfigurationError, match="several calendar entries"):
            config_loader.load_calendar(duplicate_calendar, reject_duplicate_doses=True)


@pytest.mark.unit
class TestShippedCalendar:
    def test_routine_calendar_has_no_duplicates(self) -> None:
        """Verify the shipped calendar loads strictly and numbers each course.

        Real-world significance:
        - Explicit and inferred doses in the routine calendar must not collide
        """
        path = config_loader.DEFAULT_CONFIG_PATH.parent / "calendar.yaml"
        entries = config_loader.load_calendar(path, reject_duplicate_doses=True)
        dose_map = build_dose_map(entries)

        assert sorted(dose_map["VPO"]) == [1, 2, 3, 4]
        assert sorted(dose_map["PENTA"]) == [1, 2, 3]
        assert sorted(dose_map["ROTA"]) == [1, 2]
        assert dose_map["RR"][2].calendar_id == "m15"
