"""Enumerations for the vaccination bucket engine."""

from enum import Enum

DAYS_PER_WEEK = 7
DAYS_PER_MONTH = 30.4375
DAYS_PER_YEAR = 365.25


class AgeUnit(Enum):
    """Granularity in which a calendar entry's age window is expressed.

    Each unit converts to days with a fixed ratio (1 week = 7 days,
    1 month = 30.4375 days, 1 year = 365.25 days). These ratios are used for
    age arithmetic only; scheduled dates advance by calendar months/years.
    """

    DAYS = "DAYS"
    WEEKS = "WEEKS"
    MONTHS = "MONTHS"
    YEARS = "YEARS"

    @property
    def days(self) -> float:
        """Number of days in one unit."""
        return {
            AgeUnit.DAYS: 1,
            AgeUnit.WEEKS: DAYS_PER_WEEK,
            AgeUnit.MONTHS: DAYS_PER_MONTH,
            AgeUnit.YEARS: DAYS_PER_YEAR,
        }[self]

    @classmethod
    def from_string(cls, value: "str | AgeUnit | None") -> "AgeUnit":
        """Convert string to AgeUnit.

        Unlike the other enums in this module, conversion never fails: calendar
        descriptors with a missing or unrecognized unit are treated as raw days.

        Parameters
        ----------
        value : str | AgeUnit | None
            Unit name ('DAYS', 'weeks', ...), an AgeUnit, or None.

        Returns
        -------
        AgeUnit
            Matching unit, or DAYS when the value is missing or unknown.

        Examples
        --------
        >>> AgeUnit.from_string("months")
        <AgeUnit.MONTHS: 'MONTHS'>

        >>> AgeUnit.from_string("fortnights")
        <AgeUnit.DAYS: 'DAYS'>
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.DAYS

        value_upper = str(value).strip().upper()
        for unit in cls:
            if unit.value == value_upper:
                return unit
        return cls.DAYS


class Gender(Enum):
    """Child gender, also used as an optional vaccine restriction."""

    MALE = "M"
    FEMALE = "F"

    @classmethod
    def from_string(cls, value: "str | Gender | None") -> "Gender | None":
        """Convert string to Gender.

        Parameters
        ----------
        value : str | Gender | None
            'M'/'F', 'male'/'female' or 'masculin'/'feminin' (case-insensitive),
            or None/empty for no gender.

        Returns
        -------
        Gender | None
            Corresponding Gender, or None when value is empty.

        Raises
        ------
        ValueError
            If value is not a recognised gender.
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return None

        value_lower = str(value).strip().lower()
        if not value_lower:
            return None
        aliases = {
            "m": cls.MALE,
            "male": cls.MALE,
            "masculin": cls.MALE,
            "f": cls.FEMALE,
            "female": cls.FEMALE,
            "feminin": cls.FEMALE,
            "féminin": cls.FEMALE,
        }
        if value_lower in aliases:
            return aliases[value_lower]

        raise ValueError(
            f"Unknown gender: {value}. "
            f"Valid options: {', '.join(g.value for g in cls)}"
        )


class ComplianceStatus(Enum):
    """Child-level flag summarizing whether any dose is late or overdue."""

    A_JOUR = "A_JOUR"
    PAS_A_JOUR = "PAS_A_JOUR"


class BucketState(Enum):
    """The five mutually exclusive states of a (child, vaccine, calendar, dose) key.

    DUE and LATE rows are computed and owned by the rebuild. OVERDUE,
    SCHEDULED and COMPLETED rows are written by external flows (manual entry,
    appointment scheduling, dose completion) and take precedence over
    computed states.
    """

    DUE = "DUE"
    LATE = "LATE"
    OVERDUE = "OVERDUE"
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"

    @property
    def is_computed(self) -> bool:
        """True for the states the rebuild creates and deletes."""
        return self in (BucketState.DUE, BucketState.LATE)

    @classmethod
    def from_string(cls, value: str) -> "BucketState":
        """Convert string to BucketState.

        Raises
        ------
        ValueError
            If value is not a valid state name.
        """
        value_upper = str(value).strip().upper()
        for state in cls:
            if state.value == value_upper:
                return state

        raise ValueError(
            f"Unknown bucket state: {value}. "
            f"Valid options: {', '.join(s.value for s in cls)}"
        )


class Language(Enum):
    """Supported languages for rebuild reports.

    Used to localize dates in the CSV summary written by the CLI.
    """

    ENGLISH = "en"
    FRENCH = "fr"

    @classmethod
    def from_string(cls, value: str | None) -> "Language":
        """Convert string to Language enum.

        Parameters
        ----------
        value : str | None
            Language code ('en', 'fr'), or None for default (ENGLISH).
            Case-insensitive.

        Returns
        -------
        Language
            Corresponding Language enum value.

        Raises
        ------
        ValueError
            If value is not a valid language code.
        """
        if value is None:
            return cls.ENGLISH

        value_lower = value.lower()
        for lang in cls:
            if lang.value == value_lower:
                return lang

        raise ValueError(
            f"Unsupported language: {value}. "
            f"Valid options: {', '.join(lang.value for lang in cls)}"
        )

    @classmethod
    def all_codes(cls) -> set[str]:
        """Get set of all supported language codes."""
        return {lang.value for lang in cls}
