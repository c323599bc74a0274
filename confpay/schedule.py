"""
Payment schedules.

    Weekly     every 7 days
    Bi-Weekly  every 14 days
    Monthly    every 30 days
    Custom     one explicit instant; becomes Weekly after its first payment

Advancing a schedule adds the nominal period to the previous due instant,
not to "now", so missed cycles are caught up rather than skipped. This rule
mirrors the payroll program's own pay_employee advancement exactly.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum


class ScheduleKind(str, Enum):
    WEEKLY = "Weekly"
    BIWEEKLY = "Bi-Weekly"
    MONTHLY = "Monthly"
    CUSTOM = "Custom"


PERIODS: dict[ScheduleKind, timedelta] = {
    ScheduleKind.WEEKLY: timedelta(days=7),
    ScheduleKind.BIWEEKLY: timedelta(days=14),
    ScheduleKind.MONTHLY: timedelta(days=30),
}

# A one-off date has no recurrence; after paying it the smallest regular period applies.
CUSTOM_FALLBACK = min(PERIODS, key=PERIODS.__getitem__)


def parse_schedule(value: str | ScheduleKind) -> ScheduleKind:
    """Parse a stored schedule label. Case and separators are tolerated.

    Raises ValueError for unknown labels.
    """
    if isinstance(value, ScheduleKind):
        return value
    normalized = "".join(c for c in str(value).lower() if c.isalpha())
    for kind in ScheduleKind:
        if "".join(c for c in kind.value.lower() if c.isalpha()) == normalized:
            return kind
    raise ValueError(f"Unknown schedule: {value!r}")


def nominal_period(kind: ScheduleKind) -> timedelta:
    """Recurrence period of a schedule. Custom uses its fallback period."""
    if kind is ScheduleKind.CUSTOM:
        return PERIODS[CUSTOM_FALLBACK]
    return PERIODS[kind]


def initial_due(
    kind: ScheduleKind,
    now: datetime,
    custom_at: datetime | None = None,
) -> datetime:
    """First due instant for a newly enrolled (or re-scheduled) worker."""
    if kind is ScheduleKind.CUSTOM:
        return custom_at if custom_at is not None else now
    return now + PERIODS[kind]


def advance(kind: ScheduleKind, next_due: datetime) -> tuple[ScheduleKind, datetime]:
    """Schedule state after one successful payment.

    Returns (new_kind, new_next_due).
    """
    new_due = next_due + nominal_period(kind)
    new_kind = CUSTOM_FALLBACK if kind is ScheduleKind.CUSTOM else kind
    return new_kind, new_due


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
