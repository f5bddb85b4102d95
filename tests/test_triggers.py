"""Tests for cron and calendar trigger resolution."""

from datetime import datetime, timedelta, timezone

import pytest

from src.exceptions import InvalidTriggerError, ValidationError
from src.scheduling.models import ActionType, Schedule, ScheduleKind
from src.scheduling.triggers import CalendarTrigger, CronTrigger, TriggerResolver


T0 = datetime(2025, 6, 15, 12, 0, 30, tzinfo=timezone.utc)


class TestCronTriggerParse:
    def test_valid_expression(self):
        trigger = CronTrigger.parse(" */5 * * * * ")
        assert trigger.expression == "*/5 * * * *"

    @pytest.mark.parametrize(
        "expression",
        ["", "   ", None, "not a cron", "* * * *", "61 * * * *", "* * * * * *"],
    )
    def test_invalid_expression_rejected(self, expression):
        with pytest.raises(InvalidTriggerError):
            CronTrigger.parse(expression)

    def test_invalid_trigger_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            CronTrigger.parse("bogus")


class TestCalendarTriggerParse:
    def test_strips_id(self):
        assert CalendarTrigger.parse(" cal-1 ").calendar_id == "cal-1"

    def test_empty_rejected(self):
        with pytest.raises(InvalidTriggerError):
            CalendarTrigger.parse("")


class TestNextCron:
    def test_next_is_strictly_after(self):
        resolver = TriggerResolver()
        nxt = resolver.next_cron(CronTrigger.parse("* * * * *"), T0)
        assert nxt > T0
        assert nxt == datetime(2025, 6, 15, 12, 1, 0, tzinfo=timezone.utc)

    def test_on_boundary_moves_forward(self):
        resolver = TriggerResolver()
        boundary = datetime(2025, 6, 15, 12, 5, 0, tzinfo=timezone.utc)
        nxt = resolver.next_cron(CronTrigger.parse("*/5 * * * *"), boundary)
        assert nxt == boundary + timedelta(minutes=5)

    def test_deterministic(self):
        resolver = TriggerResolver()
        trigger = CronTrigger.parse("0 9 * * 1-5")
        assert resolver.next_cron(trigger, T0) == resolver.next_cron(trigger, T0)
        assert TriggerResolver().next_cron(trigger, T0) == resolver.next_cron(trigger, T0)

    def test_result_is_utc(self):
        nxt = TriggerResolver().next_cron(CronTrigger.parse("0 * * * *"), T0)
        assert nxt.tzinfo is not None
        assert nxt.utcoffset() == timedelta(0)

    def test_naive_after_treated_as_utc(self):
        naive = T0.replace(tzinfo=None)
        nxt = TriggerResolver().next_cron(CronTrigger.parse("* * * * *"), naive)
        assert nxt == datetime(2025, 6, 15, 12, 1, 0, tzinfo=timezone.utc)

    def test_expression_evaluated_in_configured_timezone(self):
        # 09:00 in Paris during summer time is 07:00 UTC.
        resolver = TriggerResolver(timezone="Europe/Paris")
        nxt = resolver.next_cron(CronTrigger.parse("0 9 * * *"), T0)
        assert nxt == datetime(2025, 6, 16, 7, 0, 0, tzinfo=timezone.utc)

    def test_unknown_timezone_rejected(self):
        with pytest.raises(InvalidTriggerError):
            TriggerResolver(timezone="Mars/Olympus_Mons")


class TestNextOccurrence:
    @pytest.mark.asyncio
    async def test_cron_defaults_after_to_now(self):
        nxt = await TriggerResolver().next_occurrence(CronTrigger.parse("* * * * *"))
        assert nxt > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_calendar_slot_returned(self, calendar, clock):
        slot = clock.now() + timedelta(hours=1)
        calendar.slots["cal-1"] = [slot]
        resolver = TriggerResolver(calendar_lookup=calendar)
        assert await resolver.next_occurrence(CalendarTrigger("cal-1"), clock.now()) == slot

    @pytest.mark.asyncio
    async def test_calendar_without_slots_returns_none(self, calendar, clock):
        resolver = TriggerResolver(calendar_lookup=calendar)
        assert await resolver.next_occurrence(CalendarTrigger("cal-empty"), clock.now()) is None

    @pytest.mark.asyncio
    async def test_calendar_without_lookup_rejected(self):
        with pytest.raises(InvalidTriggerError):
            await TriggerResolver().next_occurrence(CalendarTrigger("cal-1"))


class TestEnsureExists:
    @pytest.mark.asyncio
    async def test_known_calendar_passes(self, calendar):
        await TriggerResolver(calendar_lookup=calendar).ensure_exists(CalendarTrigger("cal-1"))

    @pytest.mark.asyncio
    async def test_unknown_calendar_rejected(self, calendar):
        resolver = TriggerResolver(calendar_lookup=calendar)
        with pytest.raises(InvalidTriggerError, match="Calendar not found: cal-404"):
            await resolver.ensure_exists(CalendarTrigger("cal-404"))

    @pytest.mark.asyncio
    async def test_cron_needs_no_lookup(self):
        await TriggerResolver().ensure_exists(CronTrigger.parse("* * * * *"))


class TestTriggerFor:
    def _schedule(self, **kwargs):
        return Schedule(
            id="s-1",
            owner_id="user-1",
            kind=ScheduleKind.RECURRING,
            action_type=ActionType.GENERATE_IMAGE,
            **kwargs,
        )

    def test_cron(self):
        trigger = TriggerResolver.trigger_for(self._schedule(cron_expression="* * * * *"))
        assert trigger == CronTrigger("* * * * *")

    def test_calendar(self):
        trigger = TriggerResolver.trigger_for(self._schedule(calendar_id="cal-9"))
        assert trigger == CalendarTrigger("cal-9")

    def test_none(self):
        assert TriggerResolver.trigger_for(self._schedule()) is None
