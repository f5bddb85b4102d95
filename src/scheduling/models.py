"""
Scheduling data models.

Defines the core data structures used by the scheduling subsystem:
- ``ScheduleKind`` / ``ScheduleStatus`` / ``ActionType``: schedule enums.
- ``Schedule``: a persisted request to run an action once or repeatedly.
- ``ExecutionResult``: outcome of one execution attempt.
- ``GenerationHandle`` / ``GenerationJob``: what the generation
  collaborator returns and what the completion waiter polls.
- ``Post`` / ``PostType`` / ``PostStatus``: the materialized output.
- ``SocialConnection`` / ``SocialProfile`` / ``PublishOutcome``: publish
  pipeline inputs and result.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from src.utils import utc_now


# =============================================================================
# SCHEDULE ENUMS
# =============================================================================


class ScheduleKind(Enum):
    """Fire-once or repeating schedule."""

    SINGLE = "single"
    RECURRING = "recurring"


class ScheduleStatus(Enum):
    """Lifecycle status of a schedule.

    Transitions (SINGLE):
        PENDING -> COMPLETED | FAILED | CANCELLED

    Transitions (RECURRING):
        ACTIVE -> ACTIVE (next cycle) | PAUSED | COMPLETED | FAILED | CANCELLED
        PAUSED -> ACTIVE | CANCELLED
        FAILED -> ACTIVE (manual resume)
    """

    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if the dispatch loop will never pick this status up again."""
        return self in {
            ScheduleStatus.COMPLETED,
            ScheduleStatus.FAILED,
            ScheduleStatus.CANCELLED,
        }


class ActionType(Enum):
    """What a schedule does when it fires."""

    GENERATE_IMAGE = "generate_image"
    GENERATE_VIDEO = "generate_video"
    PUBLISH_POST = "publish_post"


# =============================================================================
# SCHEDULE
# =============================================================================


@dataclass
class Schedule:
    """A request to execute an action once (SINGLE) or repeatedly (RECURRING).

    Attributes:
        id: Unique identifier (UUID).
        owner_id: User that created the schedule.
        kind: SINGLE or RECURRING.
        action_type: Selects the executor strategy.
        action_data: Opaque payload for the executor (prompt, model,
            platforms, flags).
        status: Current lifecycle status.
        character_id: Optional character whose description is folded into
            the prompt.
        description: Free-text label shown to the user.
        mutation_enabled: Apply prompt mutation on every run.
        scheduled_for: SINGLE only; when to fire.
        executed_at: SINGLE only; when the attempt happened.
        result: SINGLE only; executor output on success.
        post_id: SINGLE only; optional existing post this schedule targets.
        cron_expression: RECURRING cron trigger (exclusive with calendar).
        calendar_id: RECURRING calendar trigger (exclusive with cron).
        calendar_name: Display name of the calendar.
        next_execution_at: RECURRING; next due instant.
        execution_count: RECURRING; attempts made so far.
        max_executions: RECURRING; optional cap.
        end_date: RECURRING; optional last allowed instant.
        generated_post_ids: RECURRING; append-only list of produced posts.
        last_executed_at: RECURRING; instant of the previous attempt.
        error: Error message of the most recent failed attempt.
    """

    # Required fields
    id: str
    owner_id: str
    kind: ScheduleKind
    action_type: ActionType
    action_data: Dict[str, Any] = field(default_factory=dict)
    status: ScheduleStatus = ScheduleStatus.PENDING

    # Shared metadata
    character_id: Optional[str] = None
    description: str = ""
    mutation_enabled: bool = False

    # SINGLE
    scheduled_for: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    post_id: Optional[str] = None

    # RECURRING
    cron_expression: Optional[str] = None
    calendar_id: Optional[str] = None
    calendar_name: str = ""
    next_execution_at: Optional[datetime] = None
    execution_count: int = 0
    max_executions: Optional[int] = None
    end_date: Optional[datetime] = None
    generated_post_ids: List[str] = field(default_factory=list)
    last_executed_at: Optional[datetime] = None

    error: Optional[str] = None

    # Audit
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_recurring(self) -> bool:
        return self.kind is ScheduleKind.RECURRING

    @property
    def cap_reached(self) -> bool:
        """``True`` once ``execution_count`` has hit ``max_executions``."""
        return (
            self.max_executions is not None
            and self.execution_count >= self.max_executions
        )

    def is_due(self, now: datetime) -> bool:
        """Check whether the dispatch loop should pick this schedule up at *now*."""
        if self.kind is ScheduleKind.SINGLE:
            return (
                self.status is ScheduleStatus.PENDING
                and self.scheduled_for is not None
                and self.scheduled_for <= now
            )
        return (
            self.status is ScheduleStatus.ACTIVE
            and self.next_execution_at is not None
            and self.next_execution_at <= now
            and (self.end_date is None or self.end_date >= now)
            and not self.cap_reached
        )


# =============================================================================
# EXECUTION RESULT
# =============================================================================


@dataclass
class ExecutionResult:
    """Outcome of one execution attempt, passed to ``mark_executed``.

    Attributes:
        success: Whether the executor returned normally.
        data: Executor output (``post_id``, artifact URL, publish outcome).
        error: Error message when ``success`` is ``False``.
    """

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def post_id(self) -> Optional[str]:
        """Post produced by the run, if any."""
        if not self.data:
            return None
        post_id = self.data.get("post_id")
        return str(post_id) if post_id else None

    @classmethod
    def ok(cls, data: Dict[str, Any]) -> "ExecutionResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str) -> "ExecutionResult":
        return cls(success=False, error=error)


# =============================================================================
# GENERATION
# =============================================================================


class JobStatus(Enum):
    """Status of an asynchronous generation job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class GenerationHandle:
    """Return value of ``start_generation``.

    Exactly one of ``artifact_url`` (synchronous providers) or ``job_id``
    (asynchronous providers) is normally set.
    """

    artifact_url: Optional[str] = None
    job_id: Optional[str] = None
    generation_id: Optional[str] = None
    thumbnail_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationJob:
    """Asynchronous generation job record, polled by the completion waiter.

    Attributes:
        job_id: Provider task identifier.
        status: Current job status.
        artifacts: Produced media URLs (non-empty when completed).
        webhook_processed: Set by the webhook side channel when the provider
            delivered results out-of-band.
        error: Provider error message for failed jobs.
    """

    job_id: str
    status: JobStatus = JobStatus.PENDING
    artifacts: List[str] = field(default_factory=list)
    webhook_processed: bool = False
    error: Optional[str] = None


# =============================================================================
# POSTS
# =============================================================================


class PostType(Enum):
    IMAGE = "image"
    VIDEO = "video"


class PostStatus(Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"
    FAILED = "failed"
    PROCESSING = "processing"


@dataclass
class Post:
    """A materialized generation result, owned by the post collaborator."""

    id: str
    owner_id: str
    post_type: PostType
    media_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    caption: str = ""
    nsfw: bool = False
    social_platforms: List[str] = field(default_factory=list)
    status: PostStatus = PostStatus.DRAFT


# =============================================================================
# PUBLISHING
# =============================================================================


@dataclass
class SocialConnection:
    """A social account the owner connected through the transport."""

    platform: str
    account_id: str


@dataclass
class SocialProfile:
    """The owner's transport profile and its connected accounts."""

    profile_id: str
    connections: List[SocialConnection] = field(default_factory=list)


@dataclass
class PublishOutcome:
    """Result of the publish pipeline.

    ``published=False`` with a ``reason`` is an expected outcome
    (``no_platforms``, ``no_profile``, ``nsfw_filtered``,
    ``no_connections``); ``published=False`` with an ``error`` is a
    transport failure.
    """

    published: bool
    reason: Optional[str] = None
    external_post_id: Optional[str] = None
    platforms: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"published": self.published}
        if self.reason:
            data["reason"] = self.reason
        if self.external_post_id:
            data["external_post_id"] = self.external_post_id
        if self.platforms:
            data["platforms"] = list(self.platforms)
        if self.error:
            data["error"] = self.error
        return data


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "ScheduleKind",
    "ScheduleStatus",
    "ActionType",
    "Schedule",
    "ExecutionResult",
    "JobStatus",
    "GenerationHandle",
    "GenerationJob",
    "PostType",
    "PostStatus",
    "Post",
    "SocialConnection",
    "SocialProfile",
    "PublishOutcome",
]
