"""
Unified async database client for all scheduler persistence.

ALL database operations go through the SupabaseDB class defined here.
No direct Supabase calls should appear anywhere else in the codebase.

Besides the ``schedules`` table used by the schedule store, ``SupabaseDB``
implements the collaborator contracts the scheduling core consumes:
generation job lookup, post materialization, calendar slots, the points
ledger, publish records and the structured log sink.

Usage::

    from src.database import get_db

    db = await get_db()
    rows = await db.get_due_single_schedules(utc_now())
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from supabase import AsyncClient, create_async_client

from src.exceptions import DatabaseError, InsufficientPointsError, ValidationError
from src.scheduling.models import (
    GenerationJob,
    JobStatus,
    Post,
    PostStatus,
    PostType,
)
from src.utils import parse_datetime, utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


def validate_positive(value: Union[int, float], name: str) -> None:
    """Validate that *value* is strictly positive (> 0).

    Raises:
        ValidationError: If *value* is ``None`` or not positive.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key for full server-side access
            (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


# =============================================================================
# SUPABASE DATABASE CLIENT
# =============================================================================


class SupabaseDB:
    """Unified **async** database client for the scheduler.

    **Important:** Use the :meth:`create` factory method instead of
    ``__init__`` directly -- the underlying async client requires an
    ``await`` during initialisation.
    """

    def __init__(self, client: AsyncClient) -> None:
        """Private constructor.  Use :meth:`create` factory method."""
        self.client = client

    @classmethod
    async def create(
        cls, config: Optional[SupabaseConfig] = None
    ) -> "SupabaseDB":
        """Factory method to create an async :class:`SupabaseDB` instance.

        Args:
            config: Optional configuration.  When ``None``,
                :meth:`SupabaseConfig.from_env` is used.
        """
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    # -----------------------------------------------------------------
    # SCHEDULES
    # -----------------------------------------------------------------

    async def insert_schedule(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a schedule row.

        Raises:
            ValidationError: On missing required columns.
            DatabaseError: When the insert returns no data.
        """
        if not row:
            raise ValidationError("schedule cannot be None or empty")

        required_fields: Set[str] = {"id", "owner_id", "kind", "action_type", "status"}
        missing = required_fields - set(row.keys())
        if missing:
            raise ValidationError(f"schedule missing required fields: {missing}")

        result = await self.client.table("schedules").insert(row).execute()
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return result.data[0]

    async def get_schedule(self, schedule_id: str) -> Optional[Dict[str, Any]]:
        """Get a schedule row by ID, or ``None``."""
        validate_not_empty(schedule_id, "schedule_id")

        result = await (
            self.client.table("schedules")
            .select("*")
            .eq("id", schedule_id)
            .execute()
        )
        return result.data[0] if result.data else None

    async def get_due_single_schedules(self, now: datetime) -> List[Dict[str, Any]]:
        """SINGLE schedules with status ``pending`` and ``scheduled_for <= now``.

        Returns:
            Rows ordered by ``scheduled_for`` ascending.
        """
        result = await (
            self.client.table("schedules")
            .select("*")
            .eq("kind", "single")
            .eq("status", "pending")
            .lte("scheduled_for", now.isoformat())
            .order("scheduled_for", desc=False)
            .execute()
        )
        return result.data

    async def get_due_recurring_schedules(self, now: datetime) -> List[Dict[str, Any]]:
        """ACTIVE recurring schedules whose next slot has passed.

        The end-date window is filtered server-side.  PostgREST cannot
        compare two columns, so the ``execution_count < max_executions``
        cap is applied here after the query.

        Returns:
            Rows ordered by ``next_execution_at`` ascending.
        """
        now_iso = now.isoformat()
        result = await (
            self.client.table("schedules")
            .select("*")
            .eq("kind", "recurring")
            .eq("status", "active")
            .lte("next_execution_at", now_iso)
            .or_(f"end_date.is.null,end_date.gte.{now_iso}")
            .order("next_execution_at", desc=False)
            .execute()
        )
        return [
            row for row in result.data
            if row.get("max_executions") is None
            or int(row.get("execution_count") or 0) < int(row["max_executions"])
        ]

    async def get_stalled_recurring_schedules(self, now: datetime) -> List[Dict[str, Any]]:
        """ACTIVE recurring schedules the due query never returns.

        Those without a ``next_execution_at``, past their ``end_date`` or at
        their ``max_executions`` cap.  Capped rows are narrowed down here,
        since PostgREST cannot compare two columns.
        """
        now_iso = now.isoformat()
        result = await (
            self.client.table("schedules")
            .select("*")
            .eq("kind", "recurring")
            .eq("status", "active")
            .or_(
                f"next_execution_at.is.null,end_date.lt.{now_iso},"
                "max_executions.not.is.null"
            )
            .execute()
        )
        return [
            row for row in result.data
            if row.get("next_execution_at") is None
            or (row.get("end_date") is not None and parse_datetime(row["end_date"], "end_date") < now)
            or (
                row.get("max_executions") is not None
                and int(row.get("execution_count") or 0) >= int(row["max_executions"])
            )
        ]

    async def update_schedule(
        self,
        schedule_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
        expected_execution_count: Optional[int] = None,
    ) -> bool:
        """Conditionally update a schedule row.

        When *expected_status* / *expected_execution_count* are given the
        update only matches rows still in that state (compare-and-swap),
        so a stale writer cannot overwrite a concurrent transition.

        Returns:
            ``True`` if a row was updated.
        """
        validate_not_empty(schedule_id, "schedule_id")
        if not fields:
            raise ValidationError("update fields cannot be empty")

        query = (
            self.client.table("schedules")
            .update(fields)
            .eq("id", schedule_id)
        )
        if expected_status is not None:
            query = query.eq("status", expected_status)
        if expected_execution_count is not None:
            query = query.eq("execution_count", expected_execution_count)

        result = await query.execute()
        return bool(result.data)

    async def delete_schedule(self, schedule_id: str, owner_id: str) -> bool:
        """Delete a schedule owned by *owner_id*.  Returns ``True`` if removed."""
        validate_not_empty(schedule_id, "schedule_id")
        validate_not_empty(owner_id, "owner_id")

        result = await (
            self.client.table("schedules")
            .delete()
            .eq("id", schedule_id)
            .eq("owner_id", owner_id)
            .execute()
        )
        return bool(result.data)

    async def list_schedules(
        self,
        owner_id: str,
        filters: Optional[Dict[str, str]] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """List an owner's schedules, newest first.

        Args:
            owner_id: Owning user.
            filters: Optional equality filters (``kind``, ``status``,
                ``action_type``).
            offset: Rows to skip.
            limit: Page size (must be > 0).

        Returns:
            Tuple of (rows, total matching count).
        """
        validate_not_empty(owner_id, "owner_id")
        validate_positive(limit, "limit")

        query = (
            self.client.table("schedules")
            .select("*", count="exact")
            .eq("owner_id", owner_id)
        )
        for column, value in (filters or {}).items():
            query = query.eq(column, value)

        result = await (
            query.order("created_at", desc=True)
            .range(offset, offset + limit - 1)
            .execute()
        )
        return result.data, result.count or 0

    async def get_schedule_statuses(self, owner_id: str) -> List[str]:
        """Status of every schedule owned by *owner_id* (for statistics)."""
        validate_not_empty(owner_id, "owner_id")

        result = await (
            self.client.table("schedules")
            .select("status")
            .eq("owner_id", owner_id)
            .execute()
        )
        return [row["status"] for row in result.data]

    # -----------------------------------------------------------------
    # GENERATION JOBS
    # -----------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[GenerationJob]:
        """Load a generation job by provider task id.

        Rows are written by the generation webhook handler; a missing row
        means the job has not been registered yet.
        """
        validate_not_empty(job_id, "job_id")

        result = await (
            self.client.table("generation_jobs")
            .select("*")
            .eq("job_id", job_id)
            .execute()
        )
        if not result.data:
            return None

        row = result.data[0]
        try:
            status = JobStatus(row.get("status", "pending"))
        except ValueError:
            logger.warning("Unknown job status %r for job %s", row.get("status"), job_id)
            status = JobStatus.PROCESSING

        return GenerationJob(
            job_id=row["job_id"],
            status=status,
            artifacts=[a for a in (row.get("artifacts") or []) if a],
            webhook_processed=bool(row.get("webhook_processed")),
            error=row.get("error"),
        )

    # -----------------------------------------------------------------
    # POSTS
    # -----------------------------------------------------------------

    async def _insert_post(self, post_type: PostType, fields: Dict[str, Any]) -> Post:
        if not fields.get("owner_id"):
            raise ValidationError("post must have owner_id")
        if not fields.get("media_url"):
            raise ValidationError("post must have media_url")

        row = {
            "owner_id": fields["owner_id"],
            "type": post_type.value,
            "media_url": fields["media_url"],
            "thumbnail_url": fields.get("thumbnail_url"),
            "caption": fields.get("caption", ""),
            "nsfw": bool(fields.get("nsfw", False)),
            "social_platforms": list(fields.get("social_platforms") or []),
            "social_post_ids": {},
            "status": PostStatus.DRAFT.value,
            "source": fields.get("source", "cron_job"),
            "visibility": fields.get("visibility", "private"),
            "metadata": fields.get("metadata") or {},
            "created_at": utc_now().isoformat(),
        }

        result = await self.client.table("posts").insert(row).execute()
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return self._row_to_post(result.data[0])

    async def create_post_from_image(self, fields: Dict[str, Any]) -> Post:
        """Materialize an image generation as a post."""
        return await self._insert_post(PostType.IMAGE, fields)

    async def create_post_from_video(self, fields: Dict[str, Any]) -> Post:
        """Materialize a video generation as a post."""
        return await self._insert_post(PostType.VIDEO, fields)

    async def get_post_by_id(self, post_id: str) -> Optional[Post]:
        """Get a post by ID, or ``None``."""
        validate_not_empty(post_id, "post_id")

        result = await (
            self.client.table("posts")
            .select("*")
            .eq("id", post_id)
            .execute()
        )
        return self._row_to_post(result.data[0]) if result.data else None

    async def update_post_status(self, post_id: str, status: PostStatus) -> None:
        """Set a post's status."""
        validate_not_empty(post_id, "post_id")

        await (
            self.client.table("posts")
            .update({"status": status.value, "updated_at": utc_now().isoformat()})
            .eq("id", post_id)
            .execute()
        )

    async def add_social_post_id(
        self, post_id: str, platform: str, external_post_id: str
    ) -> None:
        """Record the transport's post id for one platform on the post."""
        validate_not_empty(post_id, "post_id")
        validate_not_empty(platform, "platform")

        result = await (
            self.client.table("posts")
            .select("social_post_ids")
            .eq("id", post_id)
            .execute()
        )
        if not result.data:
            raise DatabaseError(f"Post {post_id} not found")

        ids = dict(result.data[0].get("social_post_ids") or {})
        ids[platform] = external_post_id
        await (
            self.client.table("posts")
            .update({"social_post_ids": ids, "updated_at": utc_now().isoformat()})
            .eq("id", post_id)
            .execute()
        )

    # -----------------------------------------------------------------
    # CALENDARS
    # -----------------------------------------------------------------

    async def calendar_exists(self, calendar_id: str) -> bool:
        """Whether a calendar with this id exists."""
        validate_not_empty(calendar_id, "calendar_id")

        result = await (
            self.client.table("calendars")
            .select("id")
            .eq("id", calendar_id)
            .execute()
        )
        return bool(result.data)

    async def next_available_slot(self, calendar_id: str) -> Optional[datetime]:
        """Earliest unused slot of an active calendar after now."""
        validate_not_empty(calendar_id, "calendar_id")

        calendar = await (
            self.client.table("calendars")
            .select("id, status")
            .eq("id", calendar_id)
            .execute()
        )
        if not calendar.data:
            return None
        if calendar.data[0].get("status", "active") != "active":
            return None

        result = await (
            self.client.table("calendar_slots")
            .select("publish_at")
            .eq("calendar_id", calendar_id)
            .eq("used", False)
            .gt("publish_at", utc_now().isoformat())
            .order("publish_at", desc=False)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return parse_datetime(result.data[0]["publish_at"], "publish_at")

    # -----------------------------------------------------------------
    # PROMPT SOURCES
    # -----------------------------------------------------------------

    async def get_character(self, character_id: str) -> Optional[Dict[str, Any]]:
        """Character profile used to enrich prompts."""
        validate_not_empty(character_id, "character_id")

        result = await (
            self.client.table("characters")
            .select("*")
            .eq("id", character_id)
            .execute()
        )
        return result.data[0] if result.data else None

    async def get_prompt(self, prompt_id: str) -> Optional[str]:
        """Text of a saved custom prompt."""
        validate_not_empty(prompt_id, "prompt_id")

        result = await (
            self.client.table("prompts")
            .select("prompt")
            .eq("id", prompt_id)
            .execute()
        )
        return result.data[0].get("prompt") if result.data else None

    # -----------------------------------------------------------------
    # POINTS LEDGER
    # -----------------------------------------------------------------

    async def deduct(self, owner_id: str, amount: int, reason: str) -> None:
        """Charge *amount* points to *owner_id*.

        The balance update is conditional on the balance that was read,
        so two concurrent charges cannot both succeed on stale data.

        Raises:
            InsufficientPointsError: If the balance is lower than *amount*.
            DatabaseError: If the user is missing or the balance changed
                concurrently.
        """
        validate_not_empty(owner_id, "owner_id")
        validate_positive(amount, "amount")

        result = await (
            self.client.table("users")
            .select("points")
            .eq("id", owner_id)
            .execute()
        )
        if not result.data:
            raise DatabaseError(f"User {owner_id} not found")

        balance = int(result.data[0].get("points") or 0)
        if balance < amount:
            raise InsufficientPointsError(required=amount, available=balance)

        updated = await (
            self.client.table("users")
            .update({"points": balance - amount})
            .eq("id", owner_id)
            .eq("points", balance)
            .execute()
        )
        if not updated.data:
            raise DatabaseError(f"Points balance of {owner_id} changed concurrently")

        await self.client.table("points_history").insert({
            "user_id": owner_id,
            "amount": -amount,
            "reason": reason,
            "created_at": utc_now().isoformat(),
        }).execute()

    # -----------------------------------------------------------------
    # SOCIAL
    # -----------------------------------------------------------------

    async def get_social_account(self, owner_id: str) -> Optional[Dict[str, Any]]:
        """The owner's Late profile id and connected accounts.

        Returns:
            Dict with ``late_profile_id`` and ``sns_connections`` or ``None``.
        """
        validate_not_empty(owner_id, "owner_id")

        result = await (
            self.client.table("users")
            .select("late_profile_id, sns_connections")
            .eq("id", owner_id)
            .execute()
        )
        return result.data[0] if result.data else None

    async def save_publish_record(self, record: Dict[str, Any]) -> str:
        """Persist a successful social publication.

        Raises:
            ValidationError: On missing required fields.
            DatabaseError: When the insert returns no data.
        """
        required_fields: Set[str] = {"owner_id", "post_id", "external_post_id"}
        missing = required_fields - set(record.keys())
        if missing:
            raise ValidationError(f"publish record missing required fields: {missing}")

        result = await self.client.table("social_posts").insert(record).execute()
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return result.data[0]["id"]

    # -----------------------------------------------------------------
    # LOGS
    # -----------------------------------------------------------------

    async def save_execution_log(self, entry: Dict[str, Any]) -> None:
        """Insert a structured log entry into ``scheduler_logs``."""
        await self.client.table("scheduler_logs").insert(entry).execute()

    # -----------------------------------------------------------------
    # INTERNAL HELPERS
    # -----------------------------------------------------------------

    @staticmethod
    def _row_to_post(row: Dict[str, Any]) -> Post:
        """Convert a ``posts`` row to a :class:`Post`."""
        return Post(
            id=str(row["id"]),
            owner_id=str(row.get("owner_id", "")),
            post_type=PostType(row.get("type", "image")),
            media_url=row.get("media_url"),
            thumbnail_url=row.get("thumbnail_url"),
            caption=row.get("caption") or "",
            nsfw=bool(row.get("nsfw", False)),
            social_platforms=list(row.get("social_platforms") or []),
            status=PostStatus(row.get("status", "draft")),
        )


# =============================================================================
# GLOBAL DATABASE INSTANCE (Singleton)
# =============================================================================

_db_instance: Optional[SupabaseDB] = None
_db_lock: Optional[asyncio.Lock] = None

# Thread lock for safe initialisation of the async lock itself.
_init_lock = threading.Lock()


async def get_db() -> SupabaseDB:
    """Get the global async database instance.

    The first call creates the :class:`SupabaseDB` singleton; subsequent
    calls return the same instance.
    """
    global _db_instance, _db_lock

    if _db_lock is None:
        with _init_lock:
            if _db_lock is None:
                _db_lock = asyncio.Lock()

    if _db_instance is None:
        async with _db_lock:
            if _db_instance is None:
                _db_instance = await SupabaseDB.create()

    return _db_instance
