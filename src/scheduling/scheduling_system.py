"""
Schedule lifecycle management.

``SchedulingSystem`` owns every status transition of a schedule: creation
and validation, the post-execution advance performed by the dispatch loop
(:meth:`SchedulingSystem.mark_executed`), and the owner-initiated actions
(update, pause, resume, cancel, delete).

State machine::

    SINGLE:     PENDING -> COMPLETED | FAILED | CANCELLED
    RECURRING:  ACTIVE  -> ACTIVE | PAUSED | COMPLETED | FAILED | CANCELLED
                PAUSED  -> ACTIVE | CANCELLED
                FAILED  -> ACTIVE (resume)

All writes go through the ``ScheduleStore`` with a compare-and-swap guard
on ``(status, execution_count)``, so an owner's pause or cancel issued
while an execution is in flight is never overwritten by the dispatcher.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.exceptions import (
    InvalidScheduleStateError,
    InvalidTriggerError,
    ScheduleNotFoundError,
    ScheduleOwnershipError,
    ValidationError,
)
from src.scheduling.clock import Clock, SystemClock
from src.scheduling.models import (
    ActionType,
    ExecutionResult,
    Schedule,
    ScheduleKind,
    ScheduleStatus,
)
from src.scheduling.store import ScheduleStore
from src.scheduling.triggers import CalendarTrigger, CronTrigger, TriggerResolver
from src.utils import coerce_enum, generate_id, parse_datetime, preview

logger = logging.getLogger(__name__)

# Fields an owner may change through :meth:`SchedulingSystem.update`.
UPDATABLE_FIELDS = frozenset({
    "description",
    "action_data",
    "mutation_enabled",
    "cron_expression",
    "calendar_id",
    "calendar_name",
    "scheduled_for",
    "max_executions",
    "end_date",
})

# Recurring-only fields; rejected on SINGLE schedules.
_RECURRING_FIELDS = frozenset({
    "cron_expression",
    "calendar_id",
    "calendar_name",
    "max_executions",
    "end_date",
})

MAX_PAGE_SIZE = 100

# Attempts at a conditional write before giving up on a contended row.
_CAS_ATTEMPTS = 3


@dataclass
class SchedulePage:
    """One page of an owner's schedules."""

    items: List[Schedule] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages


def _validate_max_executions(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"max_executions must be a positive integer, got {value!r}")
    return value


class SchedulingSystem:
    """Creates schedules and drives their status transitions.

    Args:
        store: Schedule persistence backend.
        resolver: Trigger resolver shared with the dispatch loop.
        clock: Time source (defaults to :class:`SystemClock`).
    """

    def __init__(
        self,
        store: ScheduleStore,
        resolver: TriggerResolver,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.clock = clock or SystemClock()

    # ================================================================
    # CREATION
    # ================================================================

    async def create(self, owner_id: str, data: Dict[str, Any]) -> Schedule:
        """Validate and persist a new schedule.

        Args:
            owner_id: User creating the schedule.
            data: Request payload.  ``kind`` and ``action_type`` are
                required; SINGLE needs ``scheduled_for`` in the future,
                RECURRING needs exactly one of ``cron_expression`` /
                ``calendar_id``.

        Returns:
            The stored schedule (PENDING for SINGLE, ACTIVE for RECURRING).

        Raises:
            ValidationError: If the payload is invalid for its kind.
        """
        if not owner_id:
            raise ValidationError("owner_id is required")

        kind = coerce_enum(ScheduleKind, data.get("kind"), "kind")
        action_type = coerce_enum(ActionType, data.get("action_type"), "action_type")

        action_data = data.get("action_data") or {}
        if not isinstance(action_data, dict):
            raise ValidationError("action_data must be an object")

        now = self.clock.now()
        schedule = Schedule(
            id=generate_id(),
            owner_id=owner_id,
            kind=kind,
            action_type=action_type,
            action_data=dict(action_data),
            character_id=data.get("character_id") or action_data.get("character_id"),
            description=data.get("description") or "",
            mutation_enabled=bool(data.get("mutation_enabled", False)),
            created_at=now,
            updated_at=now,
        )

        if kind is ScheduleKind.SINGLE:
            present = sorted(k for k in _RECURRING_FIELDS if data.get(k) is not None)
            if present:
                raise ValidationError(
                    f"Single schedules do not accept: {', '.join(present)}"
                )
            schedule.scheduled_for = self._future_time(data.get("scheduled_for"), now)
            schedule.post_id = data.get("post_id")
            schedule.status = ScheduleStatus.PENDING
        else:
            if data.get("scheduled_for") is not None:
                raise ValidationError("Recurring schedules do not accept scheduled_for")
            await self._apply_new_recurring(schedule, data, now)

        stored = await self.store.insert(schedule)
        logger.info(
            "[LIFECYCLE] Created %s %s schedule %s for %s (next=%s)",
            kind.value,
            action_type.value,
            stored.id,
            owner_id,
            (stored.scheduled_for or stored.next_execution_at or "none"),
        )
        return stored

    async def _apply_new_recurring(
        self, schedule: Schedule, data: Dict[str, Any], now: datetime
    ) -> None:
        cron = data.get("cron_expression")
        calendar_id = data.get("calendar_id")
        if bool(cron) == bool(calendar_id):
            raise ValidationError(
                "Recurring schedules need exactly one of cron_expression or calendar_id"
            )

        if cron:
            trigger = CronTrigger.parse(cron)
            schedule.cron_expression = trigger.expression
        else:
            trigger = CalendarTrigger.parse(calendar_id)
            await self.resolver.ensure_exists(trigger)
            schedule.calendar_id = trigger.calendar_id
            schedule.calendar_name = data.get("calendar_name") or ""

        schedule.max_executions = _validate_max_executions(data.get("max_executions"))
        schedule.end_date = parse_datetime(data.get("end_date"), "end_date")
        if schedule.end_date is not None and schedule.end_date <= now:
            raise ValidationError("end_date must be in the future")

        next_at = await self.resolver.next_occurrence(trigger, now)
        if next_at is not None and schedule.end_date is not None and next_at > schedule.end_date:
            raise ValidationError("Trigger has no occurrence before end_date")
        if next_at is None:
            logger.warning(
                "[LIFECYCLE] Schedule %s has no upcoming occurrence yet", schedule.id
            )

        schedule.next_execution_at = next_at
        schedule.status = ScheduleStatus.ACTIVE

    @staticmethod
    def _future_time(value: Any, now: datetime) -> datetime:
        scheduled_for = parse_datetime(value, "scheduled_for")
        if scheduled_for is None:
            raise ValidationError("scheduled_for is required for single schedules")
        if scheduled_for <= now:
            raise ValidationError("scheduled_for must be in the future")
        return scheduled_for

    # ================================================================
    # EXECUTION BOOKKEEPING
    # ================================================================

    async def mark_executed(
        self,
        schedule_id: str,
        result: ExecutionResult,
        expected_execution_count: Optional[int] = None,
    ) -> Optional[Schedule]:
        """Record an execution attempt and advance the schedule.

        SINGLE schedules become COMPLETED or FAILED.  RECURRING schedules
        always consume their slot and are decided in this order: cap
        reached -> COMPLETED, end date reached -> COMPLETED, failure ->
        FAILED, no next occurrence -> COMPLETED, otherwise ACTIVE with the
        next instant.

        If the owner paused or cancelled the schedule while the run was in
        flight, their status is kept and only the bookkeeping fields are
        written.

        Args:
            schedule_id: Schedule that was executed.
            result: Outcome of the attempt.
            expected_execution_count: ``execution_count`` observed when the
                run was dispatched.  A call whose count has already been
                advanced is a duplicate and is skipped.

        Returns:
            The updated schedule, or ``None`` if it no longer exists.
        """
        for _ in range(_CAS_ATTEMPTS):
            schedule = await self.store.get(schedule_id)
            if schedule is None:
                logger.warning(
                    "[LIFECYCLE] Schedule %s vanished before its run was recorded",
                    schedule_id,
                )
                return None

            if schedule.is_recurring:
                if (
                    expected_execution_count is not None
                    and schedule.execution_count != expected_execution_count
                ):
                    logger.info(
                        "[LIFECYCLE] Run of %s already recorded (count=%d), skipping",
                        schedule_id,
                        schedule.execution_count,
                    )
                    return schedule
                fields = await self._recurring_advance(schedule, result)
            else:
                if schedule.executed_at is not None:
                    logger.info("[LIFECYCLE] Run of %s already recorded, skipping", schedule_id)
                    return schedule
                fields = self._single_advance(schedule, result)

            fields["updated_at"] = self.clock.now()
            written = await self.store.update(
                schedule_id,
                fields,
                expected_status=schedule.status,
                expected_execution_count=schedule.execution_count,
            )
            if written:
                new_status = fields.get("status", schedule.status)
                logger.info(
                    "[LIFECYCLE] Schedule %s: %s -> %s (success=%s%s)",
                    schedule_id,
                    schedule.status.value,
                    new_status.value,
                    result.success,
                    f", error={preview(result.error)}" if result.error else "",
                )
                return await self.store.get(schedule_id)

            logger.debug("[LIFECYCLE] Schedule %s changed concurrently, re-reading", schedule_id)

        logger.error(
            "[LIFECYCLE] Could not record run of %s after %d attempts",
            schedule_id,
            _CAS_ATTEMPTS,
        )
        return await self.store.get(schedule_id)

    def _single_advance(self, schedule: Schedule, result: ExecutionResult) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "executed_at": self.clock.now(),
            "result": result.data if result.success else None,
            "error": None if result.success else result.error,
        }
        if schedule.status is ScheduleStatus.PENDING:
            fields["status"] = (
                ScheduleStatus.COMPLETED if result.success else ScheduleStatus.FAILED
            )
        return fields

    async def _recurring_advance(
        self, schedule: Schedule, result: ExecutionResult
    ) -> Dict[str, Any]:
        now = self.clock.now()
        count = schedule.execution_count + 1
        post_ids = list(schedule.generated_post_ids)
        if result.post_id and result.post_id not in post_ids:
            post_ids.append(result.post_id)

        fields: Dict[str, Any] = {
            "execution_count": count,
            "last_executed_at": now,
            "generated_post_ids": post_ids,
            "error": None if result.success else result.error,
        }

        # Owner moved it out of ACTIVE while the run was in flight.
        if schedule.status is not ScheduleStatus.ACTIVE:
            return fields

        status = ScheduleStatus.ACTIVE
        next_at: Optional[datetime] = None

        if schedule.max_executions is not None and count >= schedule.max_executions:
            status = ScheduleStatus.COMPLETED
        elif schedule.end_date is not None and now >= schedule.end_date:
            status = ScheduleStatus.COMPLETED
        elif not result.success:
            status = ScheduleStatus.FAILED
        else:
            try:
                next_at = await self._next_for(schedule, now)
            except InvalidTriggerError as exc:
                status = ScheduleStatus.FAILED
                fields["error"] = str(exc)
            except Exception as exc:
                # Lookup outage: record the run now, the stalled sweep re-resolves.
                logger.warning(
                    "[LIFECYCLE] Next occurrence of %s unavailable: %s", schedule.id, exc
                )
                fields["error"] = f"Next occurrence lookup failed: {exc}"
            else:
                if next_at is None:
                    status = ScheduleStatus.COMPLETED
                elif schedule.end_date is not None and next_at > schedule.end_date:
                    status = ScheduleStatus.COMPLETED
                    next_at = None

        fields["status"] = status
        fields["next_execution_at"] = next_at if status is ScheduleStatus.ACTIVE else None
        return fields

    async def _next_for(self, schedule: Schedule, after: datetime) -> Optional[datetime]:
        trigger = self.resolver.trigger_for(schedule)
        if trigger is None:
            raise InvalidTriggerError(f"Schedule {schedule.id} has no trigger")
        return await self.resolver.next_occurrence(trigger, after)

    async def resolve_stalled(self, schedule: Schedule) -> Optional[Schedule]:
        """Settle an ACTIVE recurring schedule the due scan cannot pick up.

        That is one without a next instant, or one whose cap or end date is
        already reached.  Exhausted schedules become COMPLETED; otherwise
        ``next_execution_at`` is set when the trigger yields a slot and the
        schedule is COMPLETED when it does not.

        Returns:
            The updated schedule, or ``None`` if the row changed underneath.
        """
        now = self.clock.now()
        fields: Dict[str, Any] = {"updated_at": now}

        next_at: Optional[datetime] = None
        if not schedule.cap_reached and not (
            schedule.end_date is not None and now >= schedule.end_date
        ):
            next_at = await self._next_for(schedule, now)
            if next_at is not None and schedule.end_date is not None and next_at > schedule.end_date:
                next_at = None

        if next_at is None:
            fields["status"] = ScheduleStatus.COMPLETED
        fields["next_execution_at"] = next_at

        written = await self.store.update(
            schedule.id,
            fields,
            expected_status=ScheduleStatus.ACTIVE,
            expected_execution_count=schedule.execution_count,
        )
        if not written:
            return None

        if next_at is None:
            logger.info("[LIFECYCLE] Schedule %s has no further occurrences, completed", schedule.id)
        else:
            logger.info("[LIFECYCLE] Schedule %s re-armed for %s", schedule.id, next_at.isoformat())
        return await self.store.get(schedule.id)

    # ================================================================
    # OWNER ACTIONS
    # ================================================================

    async def get_schedule(self, schedule_id: str, owner_id: str) -> Schedule:
        """Fetch a schedule the caller owns.

        Raises:
            ScheduleNotFoundError: If the schedule does not exist.
            ScheduleOwnershipError: If *owner_id* does not own it.
        """
        schedule = await self.store.get(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(f"Schedule {schedule_id} not found")
        if schedule.owner_id != owner_id:
            raise ScheduleOwnershipError(schedule_id, owner_id)
        return schedule

    async def update(
        self, schedule_id: str, owner_id: str, patch: Dict[str, Any]
    ) -> Schedule:
        """Apply an owner's edit to a schedule.

        Only :data:`UPDATABLE_FIELDS` are accepted.  Setting one trigger on
        a recurring schedule clears the other and recomputes the next
        instant; a new ``scheduled_for`` must still be in the future.

        Raises:
            ValidationError: On unknown fields or invalid values.
            InvalidScheduleStateError: If the schedule is completed or
                cancelled, or changed while the edit was applied.
        """
        schedule = await self.get_schedule(schedule_id, owner_id)
        if schedule.status in (ScheduleStatus.COMPLETED, ScheduleStatus.CANCELLED):
            raise InvalidScheduleStateError(
                f"Schedule {schedule_id} is {schedule.status.value} and cannot be edited"
            )

        unknown = sorted(set(patch) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}")

        now = self.clock.now()
        fields: Dict[str, Any] = {}

        if "description" in patch:
            fields["description"] = patch["description"] or ""
        if "mutation_enabled" in patch:
            fields["mutation_enabled"] = bool(patch["mutation_enabled"])
        if "action_data" in patch:
            if not isinstance(patch["action_data"], dict):
                raise ValidationError("action_data must be an object")
            fields["action_data"] = dict(patch["action_data"])

        if schedule.is_recurring:
            if "scheduled_for" in patch:
                raise ValidationError("Recurring schedules do not accept scheduled_for")
            await self._patch_recurring(schedule, patch, fields, now)
        else:
            present = sorted(k for k in _RECURRING_FIELDS if k in patch)
            if present:
                raise ValidationError(
                    f"Single schedules do not accept: {', '.join(present)}"
                )
            if "scheduled_for" in patch:
                if schedule.status is not ScheduleStatus.PENDING:
                    raise InvalidScheduleStateError(
                        f"Schedule {schedule_id} already ran and cannot be rescheduled"
                    )
                fields["scheduled_for"] = self._future_time(patch["scheduled_for"], now)

        if not fields:
            return schedule

        fields["updated_at"] = now
        written = await self.store.update(
            schedule_id,
            fields,
            expected_status=schedule.status,
            expected_execution_count=schedule.execution_count,
        )
        if not written:
            raise InvalidScheduleStateError(
                f"Schedule {schedule_id} changed while being updated, retry"
            )

        logger.info(
            "[LIFECYCLE] Updated schedule %s (%s)",
            schedule_id,
            ", ".join(sorted(k for k in fields if k != "updated_at")),
        )
        return await self.get_schedule(schedule_id, owner_id)

    async def _patch_recurring(
        self,
        schedule: Schedule,
        patch: Dict[str, Any],
        fields: Dict[str, Any],
        now: datetime,
    ) -> None:
        cron = patch.get("cron_expression")
        calendar_id = patch.get("calendar_id")
        if cron and calendar_id:
            raise ValidationError("Set either cron_expression or calendar_id, not both")

        trigger = None
        if cron:
            trigger = CronTrigger.parse(cron)
            fields.update(
                cron_expression=trigger.expression, calendar_id=None, calendar_name=""
            )
        elif calendar_id:
            trigger = CalendarTrigger.parse(calendar_id)
            await self.resolver.ensure_exists(trigger)
            fields.update(
                calendar_id=trigger.calendar_id,
                calendar_name=patch.get("calendar_name") or "",
                cron_expression=None,
            )
        elif "calendar_name" in patch:
            fields["calendar_name"] = patch["calendar_name"] or ""

        if "max_executions" in patch:
            fields["max_executions"] = _validate_max_executions(patch["max_executions"])
        if "end_date" in patch:
            end_date = parse_datetime(patch["end_date"], "end_date")
            if end_date is not None and end_date <= now:
                raise ValidationError("end_date must be in the future")
            fields["end_date"] = end_date

        if trigger is not None and schedule.status is ScheduleStatus.ACTIVE:
            fields["next_execution_at"] = await self.resolver.next_occurrence(trigger, now)

        # A tightened cap or end date can leave nothing to run.
        max_executions = fields.get("max_executions", schedule.max_executions)
        end_date = fields.get("end_date", schedule.end_date)
        next_at = fields.get("next_execution_at", schedule.next_execution_at)
        exhausted = (
            max_executions is not None and schedule.execution_count >= max_executions
        ) or (
            schedule.status is ScheduleStatus.ACTIVE
            and next_at is not None
            and end_date is not None
            and next_at > end_date
        )
        if exhausted:
            logger.info(
                "[LIFECYCLE] Edit leaves schedule %s with no remaining executions",
                schedule.id,
            )
            fields["status"] = ScheduleStatus.COMPLETED
            fields["next_execution_at"] = None

    async def pause(self, schedule_id: str, owner_id: str) -> Schedule:
        """ACTIVE recurring schedule -> PAUSED."""
        schedule = await self.get_schedule(schedule_id, owner_id)
        if not schedule.is_recurring or schedule.status is not ScheduleStatus.ACTIVE:
            raise InvalidScheduleStateError(
                f"Only active recurring schedules can be paused "
                f"(schedule {schedule_id} is {schedule.kind.value}/{schedule.status.value})"
            )
        return await self._transition(
            schedule,
            {"status": ScheduleStatus.PAUSED, "next_execution_at": None},
        )

    async def resume(self, schedule_id: str, owner_id: str) -> Schedule:
        """PAUSED or FAILED recurring schedule -> ACTIVE.

        The next instant is recomputed from now.  A calendar without a free
        slot leaves ``next_execution_at`` empty; the dispatch loop's stalled
        sweep settles it on a later tick.
        """
        schedule = await self.get_schedule(schedule_id, owner_id)
        if not schedule.is_recurring or schedule.status not in (
            ScheduleStatus.PAUSED,
            ScheduleStatus.FAILED,
        ):
            raise InvalidScheduleStateError(
                f"Only paused or failed recurring schedules can be resumed "
                f"(schedule {schedule_id} is {schedule.kind.value}/{schedule.status.value})"
            )

        now = self.clock.now()
        if schedule.cap_reached or (schedule.end_date is not None and now >= schedule.end_date):
            raise InvalidScheduleStateError(
                f"Schedule {schedule_id} has no remaining executions"
            )

        next_at = await self._next_for(schedule, now)
        return await self._transition(
            schedule,
            {"status": ScheduleStatus.ACTIVE, "next_execution_at": next_at, "error": None},
        )

    async def cancel(self, schedule_id: str, owner_id: str) -> Schedule:
        """Any non-terminal schedule -> CANCELLED."""
        schedule = await self.get_schedule(schedule_id, owner_id)
        if schedule.status.is_terminal:
            raise InvalidScheduleStateError(
                f"Schedule {schedule_id} is already {schedule.status.value}"
            )
        return await self._transition(
            schedule,
            {"status": ScheduleStatus.CANCELLED, "next_execution_at": None},
        )

    async def delete(self, schedule_id: str, owner_id: str) -> None:
        """Remove a schedule permanently."""
        await self.get_schedule(schedule_id, owner_id)
        if not await self.store.delete(schedule_id, owner_id):
            raise ScheduleNotFoundError(f"Schedule {schedule_id} not found")
        logger.info("[LIFECYCLE] Deleted schedule %s", schedule_id)

    async def _transition(self, schedule: Schedule, fields: Dict[str, Any]) -> Schedule:
        fields["updated_at"] = self.clock.now()
        written = await self.store.update(
            schedule.id,
            fields,
            expected_status=schedule.status,
            expected_execution_count=schedule.execution_count,
        )
        if not written:
            raise InvalidScheduleStateError(
                f"Schedule {schedule.id} changed concurrently, retry"
            )
        logger.info(
            "[LIFECYCLE] Schedule %s: %s -> %s",
            schedule.id,
            schedule.status.value,
            fields["status"].value,
        )
        return await self.get_schedule(schedule.id, schedule.owner_id)

    # ================================================================
    # QUERIES
    # ================================================================

    async def list_schedules(
        self,
        owner_id: str,
        kind: Optional[Any] = None,
        status: Optional[Any] = None,
        action_type: Optional[Any] = None,
        page: int = 1,
        limit: int = 20,
    ) -> SchedulePage:
        """Newest-first page of an owner's schedules, optionally filtered."""
        if page < 1:
            raise ValidationError(f"page must be >= 1, got {page}")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}, got {limit}")

        items, total = await self.store.list_for_owner(
            owner_id,
            kind=coerce_enum(ScheduleKind, kind, "kind") if kind else None,
            status=coerce_enum(ScheduleStatus, status, "status") if status else None,
            action_type=(
                coerce_enum(ActionType, action_type, "action_type") if action_type else None
            ),
            page=page,
            limit=limit,
        )
        return SchedulePage(items=items, total=total, page=page, limit=limit)

    async def get_stats(self, owner_id: str) -> Dict[str, int]:
        """Schedule counts per status plus ``total``; absent statuses are 0."""
        counts = await self.store.count_by_status(owner_id)
        stats = {"total": sum(counts.values())}
        for status in ScheduleStatus:
            stats[status.value] = counts.get(status.value, 0)
        return stats


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "SchedulingSystem",
    "SchedulePage",
    "UPDATABLE_FIELDS",
]
