"""Gender-based vaccine eligibility."""

from __future__ import annotations

from typing import Optional

from .enums import Gender


def is_eligible(vaccine_gender: Optional[Gender], child_gender: Optional[Gender]) -> bool:
    """Return True when a vaccine applies to a child of ``child_gender``.

    A vaccine without a gender restriction applies to every child; a
    restricted vaccine applies only to children of that gender (a child with
    no recorded gender is never eligible for a restricted vaccine).
    """
    return vaccine_gender is None or vaccine_gender == child_gender
