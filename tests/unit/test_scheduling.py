"""Unit tests for cron timing and the job scheduler."""

from datetime import datetime, timedelta, timezone

import pytest

from backend.core.scheduler import Scheduler
from backend.services.backups.schedule_timing import (
    compute_next_run,
    ensure_utc,
    is_due,
    translate_day_of_week,
    validate_cron_expression,
)


REFERENCE = datetime(2024, 5, 10, 12, 3, 30, tzinfo=timezone.utc)


class TestScheduleTiming:
    def test_every_five_minutes(self):
        assert compute_next_run("*/5 * * * *", reference=REFERENCE) == datetime(2024, 5, 10, 12, 5, tzinfo=timezone.utc)

    def test_next_run_is_strictly_later(self):
        on_the_dot = datetime(2024, 5, 10, 12, 5, tzinfo=timezone.utc)

        assert compute_next_run("*/5 * * * *", reference=on_the_dot) == datetime(
            2024, 5, 10, 12, 10, tzinfo=timezone.utc
        )

    def test_daily(self):
        assert compute_next_run("0 3 * * *", reference=REFERENCE) == datetime(2024, 5, 11, 3, 0, tzinfo=timezone.utc)

    def test_timezone_is_applied(self):
        next_run = compute_next_run("0 3 * * *", reference=REFERENCE, tz="Europe/Berlin")

        assert next_run == datetime(2024, 5, 11, 1, 0, tzinfo=timezone.utc)

    def test_naive_reference_is_utc(self):
        naive = REFERENCE.replace(tzinfo=None)

        assert compute_next_run("*/5 * * * *", reference=naive) == datetime(2024, 5, 10, 12, 5, tzinfo=timezone.utc)

    @pytest.mark.parametrize("expression", ["", "* * * *", "61 * * * *", "* * * * * *", "every day"])
    def test_invalid_expressions(self, expression):
        with pytest.raises(ValueError):
            validate_cron_expression(expression)

    def test_validate_normalizes_whitespace(self):
        assert validate_cron_expression("0  3 * *   *") == "0 3 * * *"

    def test_is_due(self):
        assert is_due(None) is True
        assert is_due(REFERENCE - timedelta(seconds=1), now=REFERENCE) is True
        assert is_due(REFERENCE, now=REFERENCE) is True
        assert is_due(REFERENCE + timedelta(seconds=1), now=REFERENCE) is False

    def test_ensure_utc(self):
        assert ensure_utc(None) is None
        assert ensure_utc(datetime(2024, 1, 1)).tzinfo == timezone.utc


WEDNESDAY = datetime(2024, 5, 8, 12, 0, tzinfo=timezone.utc)
FRIDAY = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


class TestDayOfWeek:
    @pytest.mark.parametrize(
        "expression, reference, expected",
        [
            ("0 0 * * 0", WEDNESDAY, datetime(2024, 5, 12, tzinfo=timezone.utc)),
            ("0 0 * * 7", WEDNESDAY, datetime(2024, 5, 12, tzinfo=timezone.utc)),
            ("0 0 * * 6", WEDNESDAY, datetime(2024, 5, 11, tzinfo=timezone.utc)),
            ("0 0 * * 1-5", FRIDAY, datetime(2024, 5, 13, tzinfo=timezone.utc)),
            ("0 0 * * 5-7", WEDNESDAY, datetime(2024, 5, 10, tzinfo=timezone.utc)),
            ("0 0 * * 1,3", FRIDAY, datetime(2024, 5, 13, tzinfo=timezone.utc)),
            ("0 0 * * */2", WEDNESDAY, datetime(2024, 5, 9, tzinfo=timezone.utc)),
            ("0 0 * * mon-fri", FRIDAY, datetime(2024, 5, 13, tzinfo=timezone.utc)),
        ],
    )
    def test_next_run_lands_on_crontab_weekday(self, expression, reference, expected):
        next_run = compute_next_run(expression, reference=reference)

        assert next_run == expected
        assert next_run.strftime("%a") == expected.strftime("%a")

    def test_sunday_is_weekday_zero(self):
        assert compute_next_run("0 0 * * 0", reference=WEDNESDAY).isoweekday() == 7

    @pytest.mark.parametrize(
        "field, expected",
        [
            ("*", "*"),
            ("0", "sun"),
            ("7", "sun"),
            ("1-5", "mon,tue,wed,thu,fri"),
            ("0,7", "sun"),
            ("*/3", "sun,wed,sat"),
            ("sat,sun", "sat,sun"),
        ],
    )
    def test_translate(self, field, expected):
        assert translate_day_of_week(field) == expected

    @pytest.mark.parametrize("expression", ["* * * * 8", "* * * * 5-2", "* * * * 1/x"])
    def test_invalid_weekday(self, expression):
        with pytest.raises(ValueError):
            validate_cron_expression(expression)


class TestScheduler:
    async def test_run_job_returns_result(self):
        scheduler = Scheduler()

        async def job():
            return {"ok": True}

        scheduler.build("job", job).schedule("* * * * *")

        assert await scheduler.run_job("job") == {"ok": True}
        assert [job.id for job in scheduler.jobs] == ["job"]

    async def test_failing_job_is_logged_not_raised(self, caplog):
        scheduler = Scheduler()

        async def job():
            raise RuntimeError("boom")

        scheduler.build("job", job).schedule("* * * * *")

        assert await scheduler.run_job("job") is None
        assert "Job job failed" in caplog.text

    async def test_unknown_job(self):
        with pytest.raises(KeyError):
            await Scheduler().run_job("missing")

    def test_invalid_cron_is_rejected(self):
        scheduler = Scheduler()

        async def job():
            return None

        with pytest.raises(ValueError):
            scheduler.build("job", job).schedule("not a cron")
        assert scheduler.jobs == []

    async def test_start_and_stop(self):
        scheduler = Scheduler()

        async def job():
            return None

        scheduler.build("job", job).schedule("0 * * * *")
        scheduler.start()
        try:
            assert scheduler.running is True
            assert scheduler.next_run_times()["job"] is not None
        finally:
            scheduler.stop()

        assert scheduler.running is False
