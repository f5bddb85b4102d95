"""
Collaborator interfaces consumed by the scheduling core.

The dispatch loop, executors and publish pipeline depend only on these
capabilities.  Concrete implementations are wired at start-up
(``run_scheduler.py``): :class:`~src.database.SupabaseDB` provides the
job store, post materializer, calendar lookup, points ledger and
publish-record store; :class:`~src.tools.late_client.LateClient` provides
the social transport; :class:`~src.tools.generation_client.GenerationClient`
provides generation.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from src.scheduling.models import (
    GenerationHandle,
    GenerationJob,
    Post,
    PostStatus,
    SocialProfile,
)


class GenerationCollaborator(Protocol):
    async def start_generation(self, params: Dict[str, Any]) -> GenerationHandle:
        """Start a generation; returns an immediate artifact or a job handle."""
        ...


class JobStore(Protocol):
    async def get_job(self, job_id: str) -> Optional[GenerationJob]:
        """Return the job record, or ``None`` if it is not stored yet."""
        ...


class PostMaterializer(Protocol):
    async def create_post_from_image(self, fields: Dict[str, Any]) -> Post:
        ...

    async def create_post_from_video(self, fields: Dict[str, Any]) -> Post:
        ...

    async def get_post_by_id(self, post_id: str) -> Optional[Post]:
        ...

    async def update_post_status(self, post_id: str, status: PostStatus) -> None:
        ...

    async def add_social_post_id(
        self, post_id: str, platform: str, external_post_id: str
    ) -> None:
        ...


class SocialTransport(Protocol):
    async def resolve_profile(self, owner_id: str) -> Optional[SocialProfile]:
        """Return the owner's transport profile and connected accounts."""
        ...

    async def submit_post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Submit one post; raises :class:`~src.exceptions.PublishError` on failure."""
        ...


class PublishRecordStore(Protocol):
    async def save_publish_record(self, record: Dict[str, Any]) -> str:
        ...


class CalendarLookup(Protocol):
    async def calendar_exists(self, calendar_id: str) -> bool:
        ...

    async def next_available_slot(self, calendar_id: str) -> Optional[datetime]:
        """Next free publishing slot of the calendar, or ``None``."""
        ...


class PointsLedger(Protocol):
    async def deduct(self, owner_id: str, amount: int, reason: str) -> None:
        """Charge points; raises :class:`~src.exceptions.InsufficientPointsError`."""
        ...


class CharacterSource(Protocol):
    async def get_character(self, character_id: str) -> Optional[Dict[str, Any]]:
        ...


class PromptLibrary(Protocol):
    async def get_prompt(self, prompt_id: str) -> Optional[str]:
        ...


class PromptMutator(Protocol):
    """Prompt variation.  Both methods return a dict with ``prompt``,
    ``mutations`` and ``seed`` (templates also return ``template_name``)."""

    async def mutate(self, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def apply_template(
        self, template_id: str, options: Dict[str, Any]
    ) -> Dict[str, Any]:
        ...


__all__ = [
    "GenerationCollaborator",
    "JobStore",
    "PostMaterializer",
    "SocialTransport",
    "PublishRecordStore",
    "CalendarLookup",
    "PointsLedger",
    "CharacterSource",
    "PromptLibrary",
    "PromptMutator",
]
