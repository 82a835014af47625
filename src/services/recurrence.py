"""Recurrence calculation for reminder schedules.

Every function here is pure: the same schedule, timezone, reference instant,
prior occurrence and occurrence count always give the same answer. Wall-clock
boundaries (days, weekdays, months) are computed in the reminder's own
timezone, so a reminder set for 09:00 Europe/Berlin fires at 09:00 Berlin time
no matter where the worker runs. Results are aware UTC datetimes.
"""

import calendar
import logging
from collections.abc import Iterator
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from src.clock import ensure_utc
from src.models.enums import ScheduleType
from src.schemas.schedule import ScheduleSpec

logger = logging.getLogger(__name__)

# Upper bound on candidates examined while skipping excluded dates
MAX_CANDIDATES = 1000

WEEKDAY_LABELS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def next_due(
    spec: ScheduleSpec,
    timezone: str,
    reference: datetime,
    prior_occurrence: datetime | None = None,
    occurrence_count: int = 0,
) -> datetime | None:
    """Compute the next instant a reminder is due, strictly after ``reference``.

    Args:
        spec: The reminder's schedule
        timezone: IANA timezone the schedule is expressed in
        reference: Instant to search from (usually "now")
        prior_occurrence: Due instant of the previous firing, used by interval schedules
        occurrence_count: How many times the reminder has already been delivered

    Returns:
        Aware UTC datetime, or None when the schedule has no further occurrence
    """
    if spec.max_occurrences is not None and occurrence_count >= spec.max_occurrences:
        return None

    tz = ZoneInfo(timezone)
    reference = ensure_utc(reference)
    local_ref = reference.astimezone(tz)

    # Nothing fires before the start date
    if spec.start_date is not None:
        start_floor = datetime.combine(spec.start_date, time.min, tzinfo=tz) - timedelta(
            microseconds=1
        )
        if local_ref < start_floor:
            local_ref = start_floor

    excluded = set(spec.excluded_dates)
    prior_local = ensure_utc(prior_occurrence).astimezone(tz) if prior_occurrence else None

    for count, candidate in enumerate(_candidates(spec, tz, local_ref, prior_local)):
        if count >= MAX_CANDIDATES:
            logger.warning(
                f"Gave up after {MAX_CANDIDATES} excluded candidates for {spec.type.value}"
            )
            return None
        if spec.end_date is not None and candidate.date() > spec.end_date:
            return None
        if candidate.date() in excluded:
            continue
        return candidate.astimezone(UTC)

    return None


def snooze_until(reference: datetime, minutes: int) -> datetime:
    """One-time deferred fire instant for a snoozed reminder."""
    return ensure_utc(reference) + timedelta(minutes=minutes)


def describe_schedule(spec: ScheduleSpec) -> str:
    """Human-readable schedule text, e.g. "Weekly on Mon, Wed at 09:00"."""
    at = spec.time_of_day.strftime("%H:%M")

    if spec.type == ScheduleType.ONCE:
        if spec.start_date:
            return f"Once on {spec.start_date.isoformat()} at {at}"
        return f"Once at {at}"
    if spec.type == ScheduleType.DAILY:
        return f"Daily at {at}"
    if spec.type == ScheduleType.WEEKLY:
        days = ", ".join(WEEKDAY_LABELS[d] for d in spec.weekdays)
        return f"Weekly on {days} at {at}" if days else f"Weekly at {at}"
    if spec.type == ScheduleType.MONTHLY:
        day = spec.day_of_month or "same day"
        return f"Monthly on the {day} at {at}"
    if spec.type == ScheduleType.YEARLY:
        if spec.start_date:
            return f"Yearly on {spec.start_date.strftime('%b %d')} at {at}"
        return f"Yearly at {at}"
    if spec.type == ScheduleType.INTERVAL:
        every = "day" if spec.interval == 1 else f"{spec.interval} days"
        return f"Every {every} at {at}"
    return spec.cron_expression or "Custom schedule"


def _candidates(
    spec: ScheduleSpec,
    tz: ZoneInfo,
    local_ref: datetime,
    prior_local: datetime | None,
) -> Iterator[datetime]:
    """Yield increasing local due instants after ``local_ref`` for the schedule type."""
    at = spec.time_of_day

    if spec.type == ScheduleType.ONCE:
        if spec.start_date is None:
            return
        candidate = _at(spec.start_date, at, tz)
        if _is_after(candidate, local_ref):
            yield candidate

    elif spec.type == ScheduleType.DAILY:
        day = local_ref.date()
        while True:
            candidate = _at(day, at, tz)
            if _is_after(candidate, local_ref):
                yield candidate
            day += timedelta(days=1)

    elif spec.type == ScheduleType.WEEKLY:
        weekdays = set(spec.weekdays)
        if not weekdays:
            return
        day = local_ref.date()
        while True:
            if day.weekday() in weekdays:
                candidate = _at(day, at, tz)
                if _is_after(candidate, local_ref):
                    yield candidate
            day += timedelta(days=1)

    elif spec.type == ScheduleType.MONTHLY:
        target_day = spec.day_of_month or (
            spec.start_date.day if spec.start_date else local_ref.day
        )
        year, month = local_ref.year, local_ref.month
        while True:
            candidate = _at(_clamped_date(year, month, target_day), at, tz)
            if _is_after(candidate, local_ref):
                yield candidate
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)

    elif spec.type == ScheduleType.YEARLY:
        anchor = spec.start_date or local_ref.date()
        year = local_ref.year
        while True:
            candidate = _at(_clamped_date(year, anchor.month, anchor.day), at, tz)
            if _is_after(candidate, local_ref):
                yield candidate
            year += 1

    elif spec.type == ScheduleType.INTERVAL:
        if not spec.interval:
            return
        step = timedelta(days=spec.interval)
        if prior_local is not None:
            candidate = _shift(prior_local, step, tz)
        else:
            candidate = _at(local_ref.date(), at, tz)
            if not _is_after(candidate, local_ref):
                candidate = _shift(candidate, step, tz)
        while True:
            if _is_after(candidate, local_ref):
                yield candidate
            candidate = _shift(candidate, step, tz)

    elif spec.type == ScheduleType.CUSTOM:
        # Cron expressions are stored but never evaluated
        logger.debug("Custom schedules have no computable next occurrence")
        return


def _at(day: date, at: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, at, tzinfo=tz)


def _shift(moment: datetime, step: timedelta, tz: ZoneInfo) -> datetime:
    """Advance by whole days keeping the local wall-clock time across DST changes."""
    return datetime.combine(moment.date() + step, moment.time(), tzinfo=tz)


def _clamped_date(year: int, month: int, day: int) -> date:
    """Build a date, clamping e.g. the 31st to the last day of a shorter month."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def _is_after(candidate: datetime, local_ref: datetime) -> bool:
    # Compare as UTC instants; same-zone comparisons would ignore DST folds
    return candidate.astimezone(UTC) > local_ref.astimezone(UTC)
