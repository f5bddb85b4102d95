"""
Schedule persistence.

``ScheduleStore`` is the storage contract of the lifecycle manager and the
dispatch loop.  Two backends ship with the package:

- ``SupabaseScheduleStore``: rows in the ``schedules`` table through
  :class:`~src.database.SupabaseDB`.
- ``InMemoryScheduleStore``: a dict keyed by id, for single-process
  development runs and tests.

Every conditional write takes an optional expected ``status`` and
``execution_count``.  The write only lands when the stored row still
matches, which is how ``mark_executed`` avoids clobbering a concurrent
pause or cancel.
"""

import copy
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from src.scheduling.models import (
    ActionType,
    Schedule,
    ScheduleKind,
    ScheduleStatus,
)
from src.utils import parse_datetime, utc_now

logger = logging.getLogger(__name__)


# Schedule fields that hold datetimes; serialized as ISO strings in rows.
_DATETIME_FIELDS = (
    "scheduled_for",
    "executed_at",
    "next_execution_at",
    "end_date",
    "last_executed_at",
    "created_at",
    "updated_at",
)


class ScheduleStore(Protocol):
    """Storage operations used by the scheduling core."""

    async def insert(self, schedule: Schedule) -> Schedule:
        ...

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        ...

    async def due_single(self, now: datetime) -> List[Schedule]:
        """PENDING single schedules with ``scheduled_for <= now``, oldest first."""
        ...

    async def due_recurring(self, now: datetime) -> List[Schedule]:
        """ACTIVE recurring schedules due at *now*, within end date and cap."""
        ...

    async def stalled_recurring(self, now: datetime) -> List[Schedule]:
        """ACTIVE recurring schedules the due scan will never select.

        Those without a ``next_execution_at``, past their ``end_date`` or
        at their execution cap.
        """
        ...

    async def update(
        self,
        schedule_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[ScheduleStatus] = None,
        expected_execution_count: Optional[int] = None,
    ) -> bool:
        """Apply *fields*; returns ``False`` if the guard did not match."""
        ...

    async def delete(self, schedule_id: str, owner_id: str) -> bool:
        ...

    async def list_for_owner(
        self,
        owner_id: str,
        kind: Optional[ScheduleKind] = None,
        status: Optional[ScheduleStatus] = None,
        action_type: Optional[ActionType] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Schedule], int]:
        """Newest-first page of an owner's schedules and the total count."""
        ...

    async def count_by_status(self, owner_id: str) -> Dict[str, int]:
        ...


# =============================================================================
# ROW MAPPING
# =============================================================================


def schedule_to_row(schedule: Schedule) -> Dict[str, Any]:
    """Serialize a :class:`Schedule` into a ``schedules`` row."""
    return fields_to_row({
        "id": schedule.id,
        "owner_id": schedule.owner_id,
        "kind": schedule.kind,
        "action_type": schedule.action_type,
        "action_data": schedule.action_data,
        "status": schedule.status,
        "character_id": schedule.character_id,
        "description": schedule.description,
        "mutation_enabled": schedule.mutation_enabled,
        "scheduled_for": schedule.scheduled_for,
        "executed_at": schedule.executed_at,
        "result": schedule.result,
        "post_id": schedule.post_id,
        "cron_expression": schedule.cron_expression,
        "calendar_id": schedule.calendar_id,
        "calendar_name": schedule.calendar_name,
        "next_execution_at": schedule.next_execution_at,
        "execution_count": schedule.execution_count,
        "max_executions": schedule.max_executions,
        "end_date": schedule.end_date,
        "generated_post_ids": list(schedule.generated_post_ids),
        "last_executed_at": schedule.last_executed_at,
        "error": schedule.error,
        "created_at": schedule.created_at,
        "updated_at": schedule.updated_at,
    })


def fields_to_row(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize a partial update: enums to values, datetimes to ISO strings."""
    row: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, (ScheduleKind, ScheduleStatus, ActionType)):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        row[key] = value
    return row


def row_to_schedule(row: Dict[str, Any]) -> Schedule:
    """Convert a ``schedules`` row to a :class:`Schedule`."""
    dates = {
        name: parse_datetime(row.get(name), name) for name in _DATETIME_FIELDS
    }
    return Schedule(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        kind=ScheduleKind(row["kind"]),
        action_type=ActionType(row["action_type"]),
        action_data=dict(row.get("action_data") or {}),
        status=ScheduleStatus(row.get("status", "pending")),
        character_id=row.get("character_id"),
        description=row.get("description") or "",
        mutation_enabled=bool(row.get("mutation_enabled", False)),
        scheduled_for=dates["scheduled_for"],
        executed_at=dates["executed_at"],
        result=row.get("result"),
        post_id=row.get("post_id"),
        cron_expression=row.get("cron_expression"),
        calendar_id=row.get("calendar_id"),
        calendar_name=row.get("calendar_name") or "",
        next_execution_at=dates["next_execution_at"],
        execution_count=int(row.get("execution_count") or 0),
        max_executions=row.get("max_executions"),
        end_date=dates["end_date"],
        generated_post_ids=list(row.get("generated_post_ids") or []),
        last_executed_at=dates["last_executed_at"],
        error=row.get("error"),
        created_at=dates["created_at"] or utc_now(),
        updated_at=dates["updated_at"] or utc_now(),
    )


# =============================================================================
# SUPABASE BACKEND
# =============================================================================


class SupabaseScheduleStore:
    """``ScheduleStore`` over :class:`~src.database.SupabaseDB`."""

    def __init__(self, db) -> None:
        self.db = db

    async def insert(self, schedule: Schedule) -> Schedule:
        row = await self.db.insert_schedule(schedule_to_row(schedule))
        return row_to_schedule(row)

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        row = await self.db.get_schedule(schedule_id)
        return row_to_schedule(row) if row else None

    async def due_single(self, now: datetime) -> List[Schedule]:
        rows = await self.db.get_due_single_schedules(now)
        return [row_to_schedule(r) for r in rows]

    async def due_recurring(self, now: datetime) -> List[Schedule]:
        rows = await self.db.get_due_recurring_schedules(now)
        return [row_to_schedule(r) for r in rows]

    async def stalled_recurring(self, now: datetime) -> List[Schedule]:
        rows = await self.db.get_stalled_recurring_schedules(now)
        return [row_to_schedule(r) for r in rows]

    async def update(
        self,
        schedule_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[ScheduleStatus] = None,
        expected_execution_count: Optional[int] = None,
    ) -> bool:
        updated = await self.db.update_schedule(
            schedule_id,
            fields_to_row(fields),
            expected_status=expected_status.value if expected_status else None,
            expected_execution_count=expected_execution_count,
        )
        if not updated:
            logger.debug("[STORE] Conditional update of %s matched no row", schedule_id)
        return updated

    async def delete(self, schedule_id: str, owner_id: str) -> bool:
        return await self.db.delete_schedule(schedule_id, owner_id)

    async def list_for_owner(
        self,
        owner_id: str,
        kind: Optional[ScheduleKind] = None,
        status: Optional[ScheduleStatus] = None,
        action_type: Optional[ActionType] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Schedule], int]:
        filters = {}
        if kind is not None:
            filters["kind"] = kind.value
        if status is not None:
            filters["status"] = status.value
        if action_type is not None:
            filters["action_type"] = action_type.value

        rows, total = await self.db.list_schedules(
            owner_id, filters, offset=(page - 1) * limit, limit=limit
        )
        return [row_to_schedule(r) for r in rows], total

    async def count_by_status(self, owner_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for status in await self.db.get_schedule_statuses(owner_id):
            counts[status] = counts.get(status, 0) + 1
        return counts


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================


class InMemoryScheduleStore:
    """``ScheduleStore`` kept in process memory.

    Returned schedules are copies, so callers never mutate stored state
    without going through :meth:`update`.
    """

    def __init__(self) -> None:
        self._schedules: Dict[str, Schedule] = {}

    async def insert(self, schedule: Schedule) -> Schedule:
        self._schedules[schedule.id] = copy.deepcopy(schedule)
        return copy.deepcopy(schedule)

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        schedule = self._schedules.get(schedule_id)
        return copy.deepcopy(schedule) if schedule else None

    async def due_single(self, now: datetime) -> List[Schedule]:
        due = [
            s for s in self._schedules.values()
            if s.kind is ScheduleKind.SINGLE and s.is_due(now)
        ]
        due.sort(key=lambda s: s.scheduled_for)
        return [copy.deepcopy(s) for s in due]

    async def due_recurring(self, now: datetime) -> List[Schedule]:
        due = [
            s for s in self._schedules.values()
            if s.kind is ScheduleKind.RECURRING and s.is_due(now)
        ]
        due.sort(key=lambda s: s.next_execution_at)
        return [copy.deepcopy(s) for s in due]

    async def stalled_recurring(self, now: datetime) -> List[Schedule]:
        return [
            copy.deepcopy(s) for s in self._schedules.values()
            if s.kind is ScheduleKind.RECURRING
            and s.status is ScheduleStatus.ACTIVE
            and (
                s.next_execution_at is None
                or s.cap_reached
                or (s.end_date is not None and s.end_date < now)
            )
        ]

    async def update(
        self,
        schedule_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[ScheduleStatus] = None,
        expected_execution_count: Optional[int] = None,
    ) -> bool:
        schedule = self._schedules.get(schedule_id)
        if schedule is None:
            return False
        if expected_status is not None and schedule.status is not expected_status:
            return False
        if (
            expected_execution_count is not None
            and schedule.execution_count != expected_execution_count
        ):
            return False

        for key, value in fields.items():
            if not hasattr(schedule, key):
                raise KeyError(f"Unknown schedule field: {key}")
            setattr(schedule, key, copy.deepcopy(value))
        return True

    async def delete(self, schedule_id: str, owner_id: str) -> bool:
        schedule = self._schedules.get(schedule_id)
        if schedule is None or schedule.owner_id != owner_id:
            return False
        del self._schedules[schedule_id]
        return True

    async def list_for_owner(
        self,
        owner_id: str,
        kind: Optional[ScheduleKind] = None,
        status: Optional[ScheduleStatus] = None,
        action_type: Optional[ActionType] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Schedule], int]:
        matches = [
            s for s in self._schedules.values()
            if s.owner_id == owner_id
            and (kind is None or s.kind is kind)
            and (status is None or s.status is status)
            and (action_type is None or s.action_type is action_type)
        ]
        matches.sort(key=lambda s: s.created_at, reverse=True)
        start = (page - 1) * limit
        return [copy.deepcopy(s) for s in matches[start:start + limit]], len(matches)

    async def count_by_status(self, owner_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for schedule in self._schedules.values():
            if schedule.owner_id == owner_id:
                key = schedule.status.value
                counts[key] = counts.get(key, 0) + 1
        return counts


__all__ = [
    "ScheduleStore",
    "SupabaseScheduleStore",
    "InMemoryScheduleStore",
    "schedule_to_row",
    "row_to_schedule",
    "fields_to_row",
]
