"""
Reporting periods and the freshness policy for persisted records.

The canonical period is the calendar pair ``(year, month)``. The government
API speaks in fiscal years ("2024-2025", April..March) with 3-letter month
labels, and manual uploads may use either form, so conversions live here.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Tuple

from mgnrega_pulse.core.errors import ValidationError

MONTH_LABELS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
                "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
FISCAL_START_MONTH = 4

_PERIOD_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")
_FIN_YEAR_RE = re.compile(r"^(\d{4})-(\d{4})$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def month_number(label) -> int:
    text = str(label).strip()
    if text.isdigit():
        number = int(text)
        if 1 <= number <= 12:
            return number
        raise ValidationError(f"Invalid month: {label}")
    for index, name in enumerate(MONTH_LABELS, start=1):
        if text[:3].lower() == name.lower():
            return index
    raise ValidationError(f"Invalid month: {label}")


@dataclass(frozen=True, order=True)
class Period:
    year: int
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValidationError(f"Invalid month: {self.month}")
        if self.year < 1:
            raise ValidationError(f"Invalid year: {self.year}")

    @property
    def key(self) -> int:
        return self.year * 100 + self.month

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def month_label(self) -> str:
        return MONTH_LABELS[self.month - 1]

    @property
    def fin_year(self) -> str:
        start = self.year if self.month >= FISCAL_START_MONTH else self.year - 1
        return f"{start}-{start + 1}"

    def to_fiscal(self) -> Tuple[str, str]:
        return self.fin_year, self.month_label

    @classmethod
    def from_key(cls, key: int) -> "Period":
        return cls(key // 100, key % 100)

    @classmethod
    def parse(cls, text: str) -> "Period":
        """``"YYYY-MM"`` to a Period."""
        match = _PERIOD_RE.match(str(text).strip())
        if not match:
            raise ValidationError(f"Invalid period '{text}' (must be YYYY-MM)")
        return cls(int(match.group(1)), int(match.group(2)))

    @classmethod
    def from_fiscal(cls, fin_year: str, month) -> "Period":
        match = _FIN_YEAR_RE.match(str(fin_year).strip())
        if not match:
            raise ValidationError(f"Invalid year format '{fin_year}' (must be YYYY-YYYY)")
        start, end = int(match.group(1)), int(match.group(2))
        if end != start + 1:
            raise ValidationError(f"Invalid financial year '{fin_year}'")
        number = month_number(month)
        return cls(start if number >= FISCAL_START_MONTH else end, number)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Period":
        """Accepts either ``year`` + numeric ``month`` or ``fin_year`` + month label."""
        fin_year = payload.get("fin_year") or payload.get("financial_year")
        month = payload.get("month")
        if month in (None, ""):
            raise ValidationError("Missing required field: month")
        if fin_year:
            return cls.from_fiscal(fin_year, month)
        year = payload.get("year")
        if year in (None, ""):
            raise ValidationError("Missing required field: year or fin_year")
        if isinstance(year, str) and _FIN_YEAR_RE.match(year.strip()):
            return cls.from_fiscal(year, month)
        try:
            return cls(int(year), month_number(month))
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid year: {year}")

    @classmethod
    def current(cls, now: Optional[datetime] = None) -> "Period":
        now = now or utcnow()
        return cls(now.year, now.month)


def is_stale(record: Mapping[str, Any], threshold_days: float, now: Optional[datetime] = None) -> bool:
    updated_at = record.get("updated_at")
    if updated_at is None:
        return True
    now = as_utc(now or utcnow())
    return now - as_utc(updated_at) > timedelta(days=threshold_days)


def is_current_period(period: Period, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return period.year == now.year and period.month == now.month
