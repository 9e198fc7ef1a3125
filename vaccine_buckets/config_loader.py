"""Configuration loading utilities for the vaccination bucket engine.

Provides a centralized way to load and validate the parameters.yaml
configuration file and the YAML vaccination calendar.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .data_models import CalendarEntry, DoseAssignment, Vaccine
from .dose_map import find_duplicate_definitions
from .enums import AgeUnit, Gender, Language
from .errors import ConfigurationError

SCRIPT_DIR = Path(__file__).resolve().parent
ROOT_DIR = SCRIPT_DIR.parent
DEFAULT_CONFIG_PATH = ROOT_DIR / "config" / "parameters.yaml"
DEFAULT_DATABASE_URL = "sqlite:///output/vaccine_buckets.db"

LOG = logging.getLogger(__name__)


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Load and parse the parameters.yaml configuration file.

    Automatically validates the configuration after loading.

    Parameters
    ----------
    config_path : Path, optional
        Path to the configuration file. If not provided, uses the default
        location (config/parameters.yaml in the project root).

    Returns
    -------
    Dict[str, Any]
        Parsed and validated YAML configuration as a nested dictionary.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist.
    yaml.YAMLError
        If the configuration file is invalid YAML.
    ConfigurationError
        If the configuration fails validation (see validate_config).
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    validate_config(config)
    return config


def validate_config(config: Dict[str, Any]) -> None:
    """Validate the configuration for consistency and required values.

    Parameters
    ----------
    config : Dict[str, Any]
        Configuration dictionary (result of load_config).

    Raises
    ------
    ConfigurationError
        If a value has the wrong type or is out of range.

    Notes
    -----
    **Validation checks:**

    - **Database:** database.url must be a non-empty string; database.echo a boolean
    - **Calendar:** calendar.path must be a string; reject_duplicate_doses a boolean
    - **Rebuild:** rebuild.max_workers must be a positive integer; fail_fast a boolean
    - **Report:** report.language must be a supported language code
    """
    database_config = config.get("database", {}) or {}
    url = database_config.get("url", DEFAULT_DATABASE_URL)
    if not isinstance(url, str) or not url.strip():
        raise ConfigurationError(
            "database.url must be a non-empty string "
            f"(e.g. {DEFAULT_DATABASE_URL}), got {url!r}"
        )
    _require_bool(database_config, "echo", "database.echo")

    calendar_config = config.get("calendar", {}) or {}
    calendar_path = calendar_config.get("path")
    if calendar_path is not None and not isinstance(calendar_path, str):
        raise ConfigurationError(
            f"calendar.path must be a string, got {type(calendar_path).__name__}"
        )
    _require_bool(calendar_config, "reject_duplicate_doses", "calendar.reject_duplicate_doses")

    rebuild_config = config.get("rebuild", {}) or {}
    max_workers = rebuild_config.get("max_workers", 1)
    # bool is an int subclass; reject it explicitly
    if not isinstance(max_workers, int) or isinstance(max_workers, bool):
        raise ConfigurationError(
            f"rebuild.max_workers must be an integer, got {type(max_workers).__name__}"
        )
    if max_workers <= 0:
        raise ConfigurationError(
            f"rebuild.max_workers must be positive, got {max_workers}"
        )
    _require_bool(rebuild_config, "fail_fast", "rebuild.fail_fast")

    report_config = config.get("report", {}) or {}
    _require_bool(report_config, "enabled", "report.enabled")
    try:
        Language.from_string(report_config.get("language"))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid report.language: {exc}") from exc


def _require_bool(section: Dict[str, Any], key: str, label: str) -> None:
    value = section.get(key, False)
    if not isinstance(value, bool):
        raise ConfigurationError(f"{label} must be a boolean, got {type(value).__name__}")


def load_calendar(
    calendar_path: Path, reject_duplicate_doses: bool = False
) -> List[CalendarEntry]:
    """Load a vaccination calendar from YAML.

    The file lists vaccines and calendar entries; entries keep file order,
    which is the order used for dose number inference.

    Example::

        vaccines:
          - id: HPV
            name: Human papillomavirus
            gender: F
            doses_required: 2
        entries:
          - id: cal-9y
            age_unit: YEARS
            min_age: 9
            max_age: 14
            doses:
              - vaccine: HPV
                dose: 1

    Parameters
    ----------
    calendar_path : Path
        Path to the calendar YAML file.
    reject_duplicate_doses : bool
        If True, a (vaccine, dose) pair defined by more than one entry is an
        error; otherwise it is logged as a warning and the last definition
        wins.

    Returns
    -------
    List[CalendarEntry]
        Entries in file order.

    Raises
    ------
    FileNotFoundError
        If the calendar file does not exist.
    ConfigurationError
        If the calendar is malformed or contains rejected duplicates.
    """
    calendar_path = Path(calendar_path)
    if not calendar_path.exists():
        raise FileNotFoundError(f"Calendar file not found: {calendar_path}")

    with calendar_path.open("r", encoding="utf-8") as f:
        payload = yaml.safe_load(f) or {}

    if not isinstance(payload, dict):
        raise ConfigurationError(f"Calendar file must contain a mapping: {calendar_path}")

    vaccines = _parse_vaccines(payload.get("vaccines") or [])
    entries = [
        _parse_entry(raw, vaccines, index)
        for index, raw in enumerate(payload.get("entries") or [])
    ]

    duplicates = find_duplicate_definitions(entries)
    for vaccine_id, dose_number, calendar_ids in duplicates:
        message = (
            f"Dose {dose_number} of vaccine {vaccine_id} is defined by several "
            f"calendar entries: {', '.join(str(c) for c in calendar_ids)}"
        )
        if reject_duplicate_doses:
            raise ConfigurationError(message)
        LOG.warning("%s; the last definition wins.", message)

    LOG.info("Loaded %d calendar entries from %s", len(entries), calendar_path)
    return entries


def _parse_vaccines(raw_vaccines: List[Any]) -> Dict[str, Vaccine]:
    vaccines: Dict[str, Vaccine] = {}
    for raw in raw_vaccines:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise ConfigurationError(f"Vaccine definition requires an id: {raw!r}")
        try:
            gender = Gender.from_string(raw.get("gender"))
        except ValueError as exc:
            raise ConfigurationError(f"Vaccine {raw['id']}: {exc}") from exc
        vaccine_id = str(raw["id"])
        vaccines[vaccine_id] = Vaccine(
            id=vaccine_id,
            gender=gender,
            doses_required=int(raw.get("doses_required", 1)),
            name=str(raw.get("name", vaccine_id)),
        )
    return vaccines


def _parse_entry(raw: Any, vaccines: Dict[str, Vaccine], index: int) -> CalendarEntry:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Calendar entry #{index + 1} must be a mapping")

    entry_id = str(raw.get("id") or f"entry-{index + 1}")
    assignments = []
    for dose in raw.get("doses") or []:
        if isinstance(dose, str):
            dose = {"vaccine": dose}
        vaccine_id = str(dose.get("vaccine", ""))
        if vaccine_id not in vaccines:
            raise ConfigurationError(
                f"Calendar entry {entry_id} references unknown vaccine {vaccine_id!r}"
            )
        assignments.append(
            DoseAssignment(vaccine=vaccines[vaccine_id], dose_number=dose.get("dose"))
        )

    return CalendarEntry(
        id=entry_id,
        age_unit=AgeUnit.from_string(raw.get("age_unit")),
        min_age=_parse_age(raw, "min_age", entry_id) or 0,
        max_age=_parse_age(raw, "max_age", entry_id),
        specific_age=_parse_age(raw, "specific_age", entry_id),
        description=raw.get("description"),
        dose_assignments=tuple(assignments),
    )


def _parse_age(raw: Dict[str, Any], key: str, entry_id: str) -> Optional[float]:
    value = raw.get(key)
    if value is None:
        return None
    # bool is an int subclass; YAML "yes" must not read as 1.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(
            f"Calendar entry {entry_id}: {key} must be a number, got {value!r}"
        )
    return value
