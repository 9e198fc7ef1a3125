"""Child roster import.

Reads a roster of children from CSV or Excel so they can be registered in
the bucket store before a rebuild.

**Input Contract:**
- Reads .csv, .xlsx or .xls files
- Column names are matched loosely (e.g. "Child ID", "child_id", "DOB")
- Required columns: CHILD ID, DATE OF BIRTH; GENDER is optional

**Error Handling:**
- Missing file, unsupported format or missing required columns raise
- Rows with a missing id, an unparseable birth date or an unknown gender are
  skipped with a warning; processing continues
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import pandas as pd
from rapidfuzz import fuzz, process

from .age import as_utc
from .data_models import Child
from .enums import Gender

LOG = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["CHILD ID", "DATE OF BIRTH"]
OPTIONAL_COLUMNS = ["GENDER"]

# Common spellings that fuzzy matching alone scores poorly.
COLUMN_ALIASES = {
    "dob": "DATE OF BIRTH",
    "birth date": "DATE OF BIRTH",
    "date de naissance": "DATE OF BIRTH",
    "id": "CHILD ID",
    "sex": "GENDER",
    "sexe": "GENDER",
    "genre": "GENDER",
}

THRESHOLD = 80


@dataclass(frozen=True)
class RosterResult:
    """Children parsed from a roster file.

    Parameters
    ----------
    children : List[Child]
        Valid children, in file order.
    warnings : List[str]
        Non-fatal problems (skipped rows, duplicate ids).
    """

    children: List[Child]
    warnings: List[str]


def read_roster_file(file_path: Path) -> pd.DataFrame:
    """Read a CSV or Excel roster into a DataFrame.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the file type is unsupported or the CSV cannot be decoded.
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Roster file not found: {file_path}")
    ext = file_path.suffix.lower()

    if ext in [".xlsx", ".xls"]:
        df = pd.read_excel(file_path, engine="openpyxl", dtype=str)
    elif ext == ".csv":
        for enc in ["utf-8-sig", "latin-1", "cp1252"]:
            try:
                df = pd.read_csv(
                    file_path, sep=None, encoding=enc, engine="python", dtype=str
                )
                break
            except (UnicodeDecodeError, pd.errors.ParserError):
                continue
        else:
            raise ValueError("Could not decode CSV with common encodings or delimiters")
    else:
        raise ValueError(f"Unsupported file type: {ext}")

    LOG.info("Loaded %s roster rows from %s", len(df), file_path)
    return df


def normalize(col: str) -> str:
    """Normalize a column name prior to matching."""
    col_normalized = str(col).lower().strip().replace("_", " ").replace("-", " ")
    return re.sub(r"\s+", " ", col_normalized)


def map_columns(
    df: pd.DataFrame,
    expected_columns: Sequence[str] = (*REQUIRED_COLUMNS, *OPTIONAL_COLUMNS),
) -> Tuple[pd.DataFrame, Dict[str, str]]:
    """Rename roster columns to the expected names using fuzzy matching.

    Each input column is matched against ``expected_columns`` with
    ``fuzz.partial_ratio``; matches scoring at least ``THRESHOLD`` are
    renamed. Known aliases (``dob``, ``sexe``...) are mapped directly.
    Unmatched columns are kept as-is.

    Returns
    -------
    tuple[pd.DataFrame, dict]
        Renamed DataFrame and the mapping of original to expected names.
    """
    choices = [normalize(col) for col in expected_columns]
    col_map: Dict[str, str] = {}

    for input_col in df.columns:
        normalized = normalize(input_col)
        if normalized in COLUMN_ALIASES:
            target = COLUMN_ALIASES[normalized]
        else:
            _, score, index = process.extractOne(
                query=normalized, choices=choices, scorer=fuzz.partial_ratio
            )
            if score < THRESHOLD:
                continue
            target = expected_columns[index]

        if target in col_map.values():
            continue
        col_map[input_col] = target
        LOG.debug("Matched roster column %r to %r", input_col, target)

    return df.rename(columns=col_map), col_map


def build_roster(df: pd.DataFrame) -> RosterResult:
    """Convert a mapped roster DataFrame into Child records.

    Raises
    ------
    ValueError
        If a required column is missing.
    """
    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(
            f"Missing required columns: {missing} \n Found columns: {list(df.columns)} "
        )

    working = df.copy()
    if "GENDER" not in working.columns:
        working["GENDER"] = ""
    working["CHILD ID"] = working["CHILD ID"].fillna("").astype(str).str.strip()
    working["GENDER"] = working["GENDER"].fillna("").astype(str).str.strip()
    working["DATE OF BIRTH"] = pd.to_datetime(
        working["DATE OF BIRTH"], errors="coerce", format="mixed"
    )

    warnings: List[str] = []
    children: List[Child] = []
    seen: Dict[str, int] = {}

    for position, row in enumerate(working.to_dict("records"), start=1):
        child_id = row["CHILD ID"]
        birth = row["DATE OF BIRTH"]
        raw_gender = row["GENDER"]

        if not child_id:
            warnings.append(f"Row {position}: missing child id; skipped")
            continue
        if pd.isna(birth):
            warnings.append(f"Row {position}: invalid date of birth for child {child_id}; skipped")
            continue
        try:
            gender = Gender.from_string(raw_gender)
        except ValueError:
            warnings.append(f"Row {position}: unknown gender {raw_gender!r} for child {child_id}; skipped")
            continue

        seen[child_id] = seen.get(child_id, 0) + 1
        children.append(
            Child(id=child_id, birth_date=as_utc(birth.to_pydatetime()), gender=gender)
        )

    for child_id, count in sorted(seen.items()):
        if count > 1:
            warnings.append(
                f"Duplicate child ID '{child_id}' found {count} times. "
                "Later rows overwrite earlier ones."
            )

    for warning in warnings:
        LOG.warning(warning)
    return RosterResult(children=children, warnings=warnings)


def load_roster(file_path: Path) -> RosterResult:
    """Read, map and convert a roster file in one call."""
    df = read_roster_file(file_path)
    mapped, _ = map_columns(df)
    return build_roster(mapped)
