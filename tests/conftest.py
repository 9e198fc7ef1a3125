"""Shared pytest fixtures for unit and integration tests.

This module provides:
- Temporary directory fixtures for file I/O testing
- In-memory and SQL bucket stores, and a fixture parametrized over both
- A fixed rebuild instant
- Configuration directories with parameters.yaml and calendar.yaml
"""

from __future__ import annotations

import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, Generator

import pytest
import yaml

from tests.fixtures import sample_input
from vaccine_buckets.sql_store import SqlStore
from vaccine_buckets.store import InMemoryStore


@pytest.fixture
def tmp_test_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that's cleaned up after each test.

    Yields
    ------
    Path
        Absolute path to temporary directory (automatically deleted after test)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def now() -> datetime:
    """Fixed instant at which rebuilds run."""
    return sample_input.NOW


@pytest.fixture
def memory_store() -> InMemoryStore:
    """Provide an empty in-memory bucket store."""
    return InMemoryStore()


@pytest.fixture
def sql_store() -> Generator[SqlStore, None, None]:
    """Provide an empty SQL store on a private in-memory SQLite database."""
    store = SqlStore.from_url("sqlite://")
    store.create_all()
    yield store
    store.engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def any_store(request: pytest.FixtureRequest):
    """Run a test once against each store implementation."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def config_dir(tmp_test_dir: Path) -> Dict[str, Path]:
    """Create a config directory with parameters.yaml and a small calendar.

    The database is a SQLite file inside the temporary directory.

    Returns
    -------
    Dict[str, Path]
        Keys: 'config', 'output', 'database', 'calendar'
    """
    config = tmp_test_dir / "config"
    output = tmp_test_dir / "output"
    config.mkdir()
    database = tmp_test_dir / "buckets.db"

    calendar_path = sample_input.write_calendar_file(
        sample_input.create_calendar_payload(), config
    )
    parameters = sample_input.create_test_parameters(f"sqlite:///{database}")
    (config / "parameters.yaml").write_text(
        yaml.safe_dump(parameters), encoding="utf-8"
    )

    return {
        "config": config,
        "output": output,
        "database": database,
        "calendar": calendar_path,
    }
