"""Schedule timing helpers.

Schedules carry a standard 5-field cron expression. These helpers validate
expressions and compute `next_backup_at` using APScheduler's cron trigger.

All timestamps returned by these helpers are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional, Union

from apscheduler.triggers.cron import CronTrigger


# Crontab numbering: 0 and 7 are Sunday.
WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _weekday_number(token: str) -> int:
    if not token.isdigit() or int(token) > 7:
        raise ValueError(f"Invalid day of week: {token!r}")
    return int(token)


def translate_day_of_week(field: str) -> str:
    """Rewrite a crontab day-of-week field into APScheduler weekday names.

    APScheduler numbers weekdays from Monday, crontab from Sunday. Numeric
    values, ranges and steps are expanded into explicit name lists; names
    and `*` pass through unchanged.
    """

    names = []
    for part in field.split(","):
        base, _, step_raw = part.partition("/")
        if step_raw and not step_raw.isdigit():
            raise ValueError(f"Invalid day of week step: {part!r}")
        step = int(step_raw) if step_raw else 1
        if step < 1:
            raise ValueError(f"Invalid day of week step: {part!r}")

        if base == "*":
            if not step_raw:
                names.append(part)
                continue
            first, last = 0, 6
        elif base[:1].isdigit():
            start, _, end = base.partition("-")
            first = _weekday_number(start)
            last = _weekday_number(end) if end else first
            if last < first:
                raise ValueError(f"Invalid day of week range: {part!r}")
            if step_raw and not end:
                last = 7
        else:
            names.append(part)
            continue

        for number in range(first, last + 1, step):
            name = WEEKDAY_NAMES[number]
            if name not in names:
                names.append(name)

    return ",".join(names)


def build_cron_trigger(cron_expression: str, *, tz: Union[str, tzinfo] = "UTC") -> CronTrigger:
    """Parse a crontab expression into a trigger.

    Args:
        cron_expression: 5-field cron expression (minute hour day month weekday).
        tz: Timezone the expression is evaluated in.

    Returns:
        CronTrigger: Parsed trigger.

    Raises:
        ValueError: If the expression is malformed.
    """

    fields = str(cron_expression or "").split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron expression (expected 5 fields): {cron_expression!r}")
    minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=translate_day_of_week(day_of_week),
        timezone=tz,
    )


def validate_cron_expression(cron_expression: str) -> str:
    """Return the normalized expression or raise ValueError."""

    build_cron_trigger(cron_expression)
    return " ".join(cron_expression.split())


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime read from the database to aware UTC.

    SQLite drops tzinfo on DateTime(timezone=True) columns; values are always
    written in UTC so a naive value is interpreted as UTC.
    """

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_next_run(
    cron_expression: str,
    *,
    reference: Optional[datetime] = None,
    tz: Union[str, tzinfo] = "UTC",
) -> datetime:
    """Compute the next occurrence of a cron expression strictly after `reference`.

    Args:
        cron_expression: 5-field cron expression.
        reference: Reference time (defaults to now, UTC).
        tz: Timezone the expression is evaluated in.

    Returns:
        datetime: Next fire time in UTC, always later than reference.

    Raises:
        ValueError: If the expression is malformed or never fires again.
    """

    trigger = build_cron_trigger(cron_expression, tz=tz)
    now = ensure_utc(reference) or datetime.now(timezone.utc)

    # The trigger returns the first match >= start, rounded up to whole seconds.
    start = now.replace(microsecond=0) + timedelta(seconds=1)
    next_fire = trigger.get_next_fire_time(None, start)
    if next_fire is None:
        raise ValueError(f"Cron expression {cron_expression!r} has no future occurrence")

    return next_fire.astimezone(timezone.utc)


def is_due(next_backup_at: Optional[datetime], *, now: Optional[datetime] = None) -> bool:
    """Return True when a schedule with this next run time should execute."""

    if next_backup_at is None:
        return True
    current = ensure_utc(now) or datetime.now(timezone.utc)
    return ensure_utc(next_backup_at) <= current
