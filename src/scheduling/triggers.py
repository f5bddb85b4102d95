"""
Trigger resolution for recurring schedules.

A recurring schedule fires either on a cron expression or on the free
slots of a publishing calendar.  ``TriggerResolver`` computes the next
execution instant for either kind.  It is a constructed value holding its
calendar lookup and timezone, so the lifecycle manager and the dispatch
loop share one instance and nothing lives at module level.

Cron parsing uses ``croniter``.  Expressions are validated when the
trigger is defined (``CronTrigger.parse``) so a malformed expression is
rejected at create/update time and never reaches the dispatch loop.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from src.exceptions import InvalidTriggerError
from src.scheduling.models import Schedule
from src.scheduling.protocols import CalendarLookup
from src.utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# TRIGGERS
# =============================================================================


@dataclass(frozen=True)
class CronTrigger:
    """A validated 5-field cron expression."""

    expression: str

    @classmethod
    def parse(cls, expression: Optional[str]) -> "CronTrigger":
        """Validate *expression* and build a trigger.

        Raises:
            InvalidTriggerError: If the expression is empty or malformed.
        """
        if not expression or not expression.strip():
            raise InvalidTriggerError("Cron expression cannot be empty")
        expression = expression.strip()
        if len(expression.split()) != 5 or not croniter.is_valid(expression):
            raise InvalidTriggerError(f"Invalid cron expression: {expression!r}")
        return cls(expression=expression)


@dataclass(frozen=True)
class CalendarTrigger:
    """Fires on the next available slot of a publishing calendar."""

    calendar_id: str

    @classmethod
    def parse(cls, calendar_id: Optional[str]) -> "CalendarTrigger":
        if not calendar_id or not str(calendar_id).strip():
            raise InvalidTriggerError("Calendar id cannot be empty")
        return cls(calendar_id=str(calendar_id).strip())


Trigger = Union[CronTrigger, CalendarTrigger]


# =============================================================================
# RESOLVER
# =============================================================================


class TriggerResolver:
    """Computes the next execution instant of a trigger.

    Args:
        calendar_lookup: Source of calendar slots.  Required only for
            calendar triggers.
        timezone: IANA zone in which cron expressions are evaluated
            (default ``"UTC"``).  Results are always returned in UTC.
    """

    def __init__(
        self,
        calendar_lookup: Optional[CalendarLookup] = None,
        timezone: str = "UTC",
    ) -> None:
        self.calendar_lookup = calendar_lookup
        try:
            self._zone = ZoneInfo(timezone)
        except ZoneInfoNotFoundError as exc:
            raise InvalidTriggerError(f"Unknown timezone: {timezone!r}") from exc
        self.timezone = timezone

    async def next_occurrence(
        self, trigger: Trigger, after: Optional[datetime] = None
    ) -> Optional[datetime]:
        """Return the next instant of *trigger* strictly after *after*.

        Args:
            trigger: Cron or calendar trigger.
            after: Reference instant (defaults to now).

        Returns:
            Timezone-aware UTC datetime, or ``None`` when a calendar has no
            further slot.
        """
        after = ensure_utc(after) if after is not None else utc_now()

        if isinstance(trigger, CronTrigger):
            return self.next_cron(trigger, after)

        if self.calendar_lookup is None:
            raise InvalidTriggerError(
                f"Calendar trigger {trigger.calendar_id} needs a calendar lookup"
            )
        slot = await self.calendar_lookup.next_available_slot(trigger.calendar_id)
        if slot is None:
            logger.info(
                "[TRIGGER] Calendar %s has no further slots", trigger.calendar_id
            )
            return None
        return ensure_utc(slot)

    async def ensure_exists(self, trigger: Trigger) -> None:
        """Check that a calendar trigger points at an existing calendar.

        Raises:
            InvalidTriggerError: If the calendar is unknown or no lookup is
                configured.
        """
        if isinstance(trigger, CronTrigger):
            return
        if self.calendar_lookup is None:
            raise InvalidTriggerError(
                f"Calendar trigger {trigger.calendar_id} needs a calendar lookup"
            )
        if not await self.calendar_lookup.calendar_exists(trigger.calendar_id):
            raise InvalidTriggerError(f"Calendar not found: {trigger.calendar_id}")

    def next_cron(self, trigger: CronTrigger, after: datetime) -> datetime:
        """Pure cron evaluation; deterministic for fixed ``(trigger, after)``."""
        local_after = ensure_utc(after).astimezone(self._zone)
        iterator = croniter(trigger.expression, local_after)
        candidate = iterator.get_next(datetime)
        # croniter may return the start instant itself when it lies exactly
        # on a boundary with sub-second precision; step until strictly after.
        while ensure_utc(candidate) <= ensure_utc(after):
            candidate = iterator.get_next(datetime)
        return ensure_utc(candidate)

    @staticmethod
    def trigger_for(schedule: Schedule) -> Optional[Trigger]:
        """Build the active trigger of a stored recurring schedule."""
        if schedule.cron_expression:
            return CronTrigger.parse(schedule.cron_expression)
        if schedule.calendar_id:
            return CalendarTrigger.parse(schedule.calendar_id)
        return None


__all__ = [
    "CronTrigger",
    "CalendarTrigger",
    "Trigger",
    "TriggerResolver",
]
