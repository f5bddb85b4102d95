"""Shared fixtures for the content scheduler test suite."""

import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.exceptions import InsufficientPointsError
from src.logging import init_logger
from src.scheduling.completion_waiter import CompletionWaiter
from src.scheduling.dispatch_loop import DispatchLoop
from src.scheduling.executors import (
    ExecutorRegistry,
    ImageGenerationExecutor,
    PromptResolver,
    PublishPostExecutor,
    VideoGenerationExecutor,
)
from src.scheduling.models import (
    ActionType,
    GenerationHandle,
    GenerationJob,
    Post,
    PostStatus,
    PostType,
    SocialConnection,
    SocialProfile,
)
from src.scheduling.publish_pipeline import PublishPipeline
from src.scheduling.scheduling_system import SchedulingSystem
from src.scheduling.store import InMemoryScheduleStore
from src.scheduling.triggers import TriggerResolver


# ---------------------------------------------------------------------------
# Ensure we don't hit real APIs during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear all API keys and overrides so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "GENERATION_API_KEY",
        "GENERATION_API_BASE_URL",
        "GENERATION_MEDIA_BASE_URL",
        "LATE_API_KEY",
        "LATE_API_BASE_URL",
        "DISPATCH_TICK_SECONDS",
        "JOB_MAX_WAIT_SECONDS",
        "JOB_POLL_INTERVAL_SECONDS",
        "PUBLISH_TIMEOUT_SECONDS",
        "TEST_RUN_COST",
        "LOG_LEVEL",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def _structured_logger(tmp_path):
    """Every test gets a fresh structured logger writing under tmp_path."""
    return init_logger(log_dir=str(tmp_path / "logs"))


# ---------------------------------------------------------------------------
# Virtual time
# ---------------------------------------------------------------------------
class ManualClock:
    """Clock whose time only moves when advanced or slept on."""

    def __init__(self, start: datetime) -> None:
        self._now = start
        self._monotonic = 0.0
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(max(0.0, seconds))
        await asyncio.sleep(0)


START = datetime(2025, 6, 15, 12, 0, 30, tzinfo=timezone.utc)


@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests."""
    return START


@pytest.fixture
def clock():
    return ManualClock(START)


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------
class FakeJobStore:
    """Job records that change state at given virtual instants."""

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self.timeline: Dict[str, List[Tuple[float, GenerationJob]]] = {}
        self.reads = 0

    def at(self, seconds: float, job: GenerationJob) -> None:
        self.timeline.setdefault(job.job_id, []).append((seconds, job))
        self.timeline[job.job_id].sort(key=lambda item: item[0])

    async def get_job(self, job_id: str) -> Optional[GenerationJob]:
        self.reads += 1
        current = None
        for when, job in self.timeline.get(job_id, []):
            if when <= self.clock.monotonic():
                current = job
        return current


class FakeGenerator:
    """Returns an immediate artifact per call unless handles are queued."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.queued: List[GenerationHandle] = []

    async def start_generation(self, params: Dict[str, Any]) -> GenerationHandle:
        self.calls.append(params)
        if self.queued:
            return self.queued.pop(0)
        kind = params.get("type", "image")
        return GenerationHandle(
            artifact_url=f"https://cdn.example.com/{kind}-{len(self.calls)}.png",
            generation_id=f"gen-{len(self.calls)}",
        )


class FakePostStore:
    def __init__(self) -> None:
        self.posts: Dict[str, Post] = {}
        self.created: List[Dict[str, Any]] = []
        self.social_ids: List[Tuple[str, str, str]] = []

    async def _create(self, post_type: PostType, fields: Dict[str, Any]) -> Post:
        self.created.append(fields)
        post = Post(
            id=f"post-{len(self.created)}",
            owner_id=fields["owner_id"],
            post_type=post_type,
            media_url=fields["media_url"],
            thumbnail_url=fields.get("thumbnail_url"),
            caption=fields.get("caption", ""),
            nsfw=fields.get("nsfw", False),
            social_platforms=list(fields.get("social_platforms") or []),
        )
        self.posts[post.id] = post
        return post

    async def create_post_from_image(self, fields: Dict[str, Any]) -> Post:
        return await self._create(PostType.IMAGE, fields)

    async def create_post_from_video(self, fields: Dict[str, Any]) -> Post:
        return await self._create(PostType.VIDEO, fields)

    async def get_post_by_id(self, post_id: str) -> Optional[Post]:
        return self.posts.get(post_id)

    async def update_post_status(self, post_id: str, status: PostStatus) -> None:
        self.posts[post_id].status = status

    async def add_social_post_id(self, post_id: str, platform: str, external_post_id: str) -> None:
        self.social_ids.append((post_id, platform, external_post_id))


class FakeTransport:
    def __init__(self) -> None:
        self.profile: Optional[SocialProfile] = SocialProfile(
            profile_id="late-profile-1",
            connections=[
                SocialConnection(platform="twitter", account_id="acc-tw"),
                SocialConnection(platform="instagram", account_id="acc-ig"),
            ],
        )
        self.payloads: List[Dict[str, Any]] = []
        self.response: Dict[str, Any] = {"_id": "late-post-1"}
        self.error: Optional[Exception] = None

    async def resolve_profile(self, owner_id: str) -> Optional[SocialProfile]:
        return self.profile

    async def submit_post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return self.response


class FakeRecords:
    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []

    async def save_publish_record(self, record: Dict[str, Any]) -> str:
        self.records.append(record)
        return f"record-{len(self.records)}"


class FakeCalendar:
    """Calendar slots; returns the first slot strictly after the clock's now.

    ``known`` lists calendars that exist without slots; any id with slots
    exists too.  Setting ``error`` makes slot lookups raise it.
    """

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self.slots: Dict[str, List[datetime]] = {}
        self.known = {"cal-1", "cal-empty"}
        self.error: Optional[Exception] = None

    async def calendar_exists(self, calendar_id: str) -> bool:
        return calendar_id in self.known or calendar_id in self.slots

    async def next_available_slot(self, calendar_id: str) -> Optional[datetime]:
        if self.error is not None:
            raise self.error
        for slot in sorted(self.slots.get(calendar_id, [])):
            if slot > self.clock.now():
                return slot
        return None


class FakeLedger:
    def __init__(self, balance: int = 100) -> None:
        self.balances: Dict[str, int] = {"user-1": balance}
        self.charges: List[Tuple[str, int, str]] = []

    async def deduct(self, owner_id: str, amount: int, reason: str) -> None:
        balance = self.balances.get(owner_id, 0)
        if balance < amount:
            raise InsufficientPointsError(required=amount, available=balance)
        self.balances[owner_id] = balance - amount
        self.charges.append((owner_id, amount, reason))


class FakeCharacters:
    def __init__(self) -> None:
        self.characters: Dict[str, Dict[str, Any]] = {}

    async def get_character(self, character_id: str) -> Optional[Dict[str, Any]]:
        return self.characters.get(character_id)


class FakePrompts:
    def __init__(self) -> None:
        self.prompts: Dict[str, str] = {}

    async def get_prompt(self, prompt_id: str) -> Optional[str]:
        return self.prompts.get(prompt_id)


@pytest.fixture
def job_store(clock):
    return FakeJobStore(clock)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def post_store():
    return FakePostStore()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def records():
    return FakeRecords()


@pytest.fixture
def calendar(clock):
    return FakeCalendar(clock)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def characters():
    return FakeCharacters()


@pytest.fixture
def prompt_library():
    return FakePrompts()


@pytest.fixture
def mutator():
    m = MagicMock()
    m.mutate = AsyncMock(
        side_effect=lambda prompt, options: {
            "prompt": f"{prompt}, golden hour",
            "mutations": ["lighting"],
            "seed": 42,
        }
    )
    m.apply_template = AsyncMock(
        return_value={
            "prompt": "templated prompt",
            "template_name": "Beach",
            "mutations": ["scene"],
            "seed": 7,
        }
    )
    return m


# ---------------------------------------------------------------------------
# Wired scheduler components
# ---------------------------------------------------------------------------
@pytest.fixture
def store():
    return InMemoryScheduleStore()


@pytest.fixture
def resolver(calendar):
    return TriggerResolver(calendar_lookup=calendar)


@pytest.fixture
def system(store, resolver, clock):
    return SchedulingSystem(store, resolver, clock)


@pytest.fixture
def waiter(job_store, clock):
    return CompletionWaiter(job_store, clock, max_wait_seconds=300, poll_interval_seconds=3)


@pytest.fixture
def publisher(transport, post_store, records):
    return PublishPipeline(transport, post_store, records)


@pytest.fixture
def prompt_resolver(characters, prompt_library, mutator):
    return PromptResolver(
        characters=characters,
        prompts=prompt_library,
        mutator=mutator,
        rng=random.Random(1234),
    )


@pytest.fixture
def registry(prompt_resolver, generator, waiter, post_store, publisher, ledger):
    return ExecutorRegistry(
        {
            ActionType.GENERATE_IMAGE: ImageGenerationExecutor(
                prompt_resolver, generator, waiter, post_store, publisher
            ),
            ActionType.GENERATE_VIDEO: VideoGenerationExecutor(
                prompt_resolver, generator, waiter, post_store, publisher
            ),
            ActionType.PUBLISH_POST: PublishPostExecutor(post_store, publisher),
        },
        points_ledger=ledger,
        test_run_cost=10,
    )


@pytest.fixture
def dispatch(system, store, registry, clock):
    return DispatchLoop(system, store, registry, clock=clock, tick_interval_seconds=60)


# ---------------------------------------------------------------------------
# Mock Supabase client
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_supabase_client():
    """A mock Supabase async client whose query builder chains and records calls."""
    client = MagicMock()
    table_mock = MagicMock()
    for method in (
        "select", "insert", "update", "delete", "eq", "gt", "gte", "lte",
        "order", "limit", "range", "is_", "or_",
    ):
        getattr(table_mock, method).return_value = table_mock

    table_mock.execute = AsyncMock(return_value=MagicMock(data=[], count=0))
    client.table.return_value = table_mock
    return client
