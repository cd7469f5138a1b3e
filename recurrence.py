import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Sequence, TypeVar
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from config import get_settings
from models import Recurrence, RecurrenceFrequency, Transaction


logger = logging.getLogger(__name__)

DateT = TypeVar("DateT", date, datetime)


def ledger_tz() -> ZoneInfo:
    return ZoneInfo(get_settings().timezone)


def ledger_now() -> datetime:
    return datetime.now(ledger_tz())


def to_ledger_tz(value: datetime) -> datetime:
    """Express ``value`` in the ledger timezone; naive values are ledger-local.

    The result always goes through UTC, so a wall clock time skipped by a
    DST change comes back as the instant it is stored as (02:30 -> 03:30).
    """
    tz = ledger_tz()
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    return value.astimezone(timezone.utc).astimezone(tz)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: DateT, months: int, *, anchor_day: int) -> DateT:
    """Shift ``base`` by whole months, clamping ``anchor_day`` to the month end."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(anchor_day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def occurrence_at(start: DateT, index: int, frequency: RecurrenceFrequency) -> DateT:
    """Return the ``index``-th occurrence counted from ``start``.

    Every step is computed from ``start`` itself, so a clamped month end
    (Jan 31 -> Feb 29) never shifts the anchor for later months.
    """
    if frequency == RecurrenceFrequency.daily:
        return start + timedelta(days=index)
    if frequency == RecurrenceFrequency.weekly:
        return start + timedelta(weeks=index)
    if frequency == RecurrenceFrequency.monthly:
        return add_months(start, index, anchor_day=start.day)
    return add_months(start, 12 * index, anchor_day=start.day)


def expand_occurrences(
    start: DateT,
    end: Optional[DateT],
    frequency: RecurrenceFrequency,
    upper_bound: DateT,
) -> list[DateT]:
    """Compute the ascending occurrence dates between ``start`` and the ceiling.

    The ceiling is ``min(end, upper_bound)``. The result is empty when
    ``start`` already lies past it.
    """
    ceiling = upper_bound if end is None else min(end, upper_bound)
    occurrences: list[DateT] = []
    index = 0
    candidate = start
    while candidate <= ceiling:
        occurrences.append(candidate)
        index += 1
        candidate = occurrence_at(start, index, frequency)
    return occurrences


def recurrence_occurrences(recurrence: Recurrence, upper_bound: datetime) -> list[datetime]:
    # Expansion always runs on ledger-local wall clock time so that a
    # recurrence reloaded from storage (UTC) yields the same series.
    start = to_ledger_tz(recurrence.start_date)
    end = to_ledger_tz(recurrence.end_date) if recurrence.end_date else None
    occurrences = expand_occurrences(
        start, end, recurrence.frequency, to_ledger_tz(upper_bound)
    )
    return [to_ledger_tz(o) for o in occurrences]


def pending_occurrences(recurrence: Recurrence, now: datetime) -> list[datetime]:
    """Occurrences due by ``now`` that lie after the last materialized bound."""
    occurrences = recurrence_occurrences(recurrence, now)
    if recurrence.materialized_until is None:
        return occurrences
    return [o for o in occurrences if o > recurrence.materialized_until]


class TransactionMaterializer:
    """Persists one transaction per occurrence of a recurrence.

    Works inside the caller's unit of work: transactions are added and
    flushed but never committed here, so a failure in the caller rolls the
    whole batch back together with the recurrence itself.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def materialize(
        self, recurrence: Recurrence, occurrences: Sequence[datetime]
    ) -> list[Transaction]:
        if recurrence.id is None:
            self.session.flush()
        created: list[Transaction] = []
        for occurrence in occurrences:
            txn = self._build(recurrence, occurrence)
            self.session.add(txn)
            created.append(txn)
        self.session.flush()
        logger.info(
            f"materialize: recurrence_id={recurrence.id} transactions={len(created)}"
        )
        return created

    def _build(self, recurrence: Recurrence, occurrence: datetime) -> Transaction:
        return Transaction(
            account_id=recurrence.account_id,
            value_date=occurrence,
            amount=recurrence.amount,
            direction=recurrence.direction,
            description=recurrence.description,
            recurrence_id=recurrence.id,
            tags=list(recurrence.tags),
        )
