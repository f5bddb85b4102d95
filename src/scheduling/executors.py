"""
Execution strategies for scheduled actions.

Each ``ActionType`` maps to a ``GenerationExecutor``:

- ``ImageGenerationExecutor``: resolve prompt -> generate -> wait for the
  artifact -> create an image post -> optional auto-publish.
- ``VideoGenerationExecutor``: the same flow for video.
- ``PublishPostExecutor``: publish an existing post.

``ExecutorRegistry`` selects the strategy for a schedule and turns its
outcome into an :class:`ExecutionResult`; no exception escapes
:meth:`ExecutorRegistry.execute`.  It also runs the synchronous test
preview used by the schedule editor.
"""

import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from src.exceptions import (
    GenerationError,
    GenerationTimeoutOrFailure,
    PostNotFoundError,
    PublishError,
    ValidationError,
)
from src.logging import ComponentLogger, LogComponent
from src.scheduling.completion_waiter import CompletionWaiter
from src.scheduling.models import (
    ActionType,
    ExecutionResult,
    GenerationHandle,
    Post,
    PostStatus,
    Schedule,
)
from src.scheduling.protocols import (
    CharacterSource,
    GenerationCollaborator,
    PointsLedger,
    PostMaterializer,
    PromptLibrary,
    PromptMutator,
)
from src.scheduling.publish_pipeline import PublishPipeline
from src.utils import coerce_enum, preview

logger = logging.getLogger(__name__)


# =============================================================================
# PROMPT RESOLUTION
# =============================================================================


@dataclass
class ResolvedPrompt:
    """Final prompt of a run and how it was built."""

    prompt: str
    custom_prompt_id: Optional[str] = None
    character_name: Optional[str] = None
    mutation_data: Optional[Dict[str, Any]] = None
    extras: Dict[str, Any] = field(default_factory=dict)


def describe_character(character: Dict[str, Any]) -> str:
    """Comma-joined character context: name, gender, appearance, description.

    Example: ``"Mia, female, 25 years old, asian, slim body, red hair"``.
    """
    parts = []
    if character.get("name"):
        parts.append(character["name"])
    if character.get("gender"):
        parts.append(character["gender"])

    appearance = (character.get("details") or {}).get("appearance") or {}
    if appearance.get("age"):
        parts.append(f"{appearance['age']} years old")
    if appearance.get("ethnicity"):
        parts.append(appearance["ethnicity"])
    if appearance.get("body_type"):
        parts.append(f"{appearance['body_type']} body")

    description = character.get("enhanced_prompt") or character.get("character_prompt")
    if description:
        parts.append(description)
    return ", ".join(str(p) for p in parts)


class PromptResolver:
    """Builds the prompt sent to the generation provider.

    Args:
        characters: Character profiles (optional).
        prompts: Saved custom prompts (optional).
        mutator: Prompt mutation/template engine (optional).
        rng: Random source for custom prompt selection.
    """

    def __init__(
        self,
        characters: Optional[CharacterSource] = None,
        prompts: Optional[PromptLibrary] = None,
        mutator: Optional[PromptMutator] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.characters = characters
        self.prompts = prompts
        self.mutator = mutator
        self.rng = rng or random.Random()

    async def resolve(
        self, action_data: Dict[str, Any], mutation_enabled: bool = False
    ) -> ResolvedPrompt:
        """Resolve custom prompt, character context and mutation, in that order."""
        base = (action_data.get("prompt") or "").strip()
        resolved = ResolvedPrompt(prompt=base)

        prompt_ids = action_data.get("custom_prompt_ids") or []
        if action_data.get("use_custom_prompts") and prompt_ids and self.prompts:
            resolved.custom_prompt_id = self.rng.choice(prompt_ids)
            text = await self.prompts.get_prompt(resolved.custom_prompt_id)
            if text and not base:
                base = text.strip()

        character_id = action_data.get("character_id")
        if character_id and self.characters:
            character = await self.characters.get_character(character_id)
            if character:
                resolved.character_name = character.get("name")
                context = describe_character(character)
                if context:
                    base = f"{context}, {base}" if base else context
                    logger.info(
                        "[EXECUTOR] Using character %s: %s",
                        resolved.character_name,
                        preview(base, 100),
                    )

        if mutation_enabled or action_data.get("mutation_enabled"):
            base, resolved.mutation_data = await self._mutate(base, action_data)

        resolved.prompt = base
        return resolved

    async def _mutate(
        self, prompt: str, action_data: Dict[str, Any]
    ) -> Tuple[str, Optional[Dict[str, Any]]]:
        if self.mutator is None:
            logger.warning("[EXECUTOR] Mutation requested but no mutator configured")
            return prompt, None

        options = action_data.get("mutation_options") or {}
        template_id = action_data.get("template_id")
        if template_id:
            result = await self.mutator.apply_template(template_id, options)
            return result["prompt"], {
                "template_id": template_id,
                "template_name": result.get("template_name"),
                "mutations": result.get("mutations", []),
                "seed": result.get("seed"),
            }

        result = await self.mutator.mutate(prompt, options)
        return result["prompt"], {
            "mutations": result.get("mutations", []),
            "seed": result.get("seed"),
        }


# =============================================================================
# EXECUTORS
# =============================================================================


class GenerationExecutor(ABC):
    """Strategy that performs one scheduled action."""

    action_type: ActionType

    @abstractmethod
    async def execute(
        self,
        action_data: Dict[str, Any],
        owner_id: str,
        mutation_enabled: bool = False,
    ) -> Dict[str, Any]:
        """Run the action; raise on failure.

        Returns:
            Result data stored on the schedule (``post_id`` when a post
            was produced).
        """


class _MediaExecutor(GenerationExecutor):
    """Shared generate -> wait -> materialize -> publish flow."""

    def __init__(
        self,
        prompt_resolver: PromptResolver,
        generator: GenerationCollaborator,
        waiter: CompletionWaiter,
        materializer: PostMaterializer,
        publisher: Optional[PublishPipeline] = None,
    ) -> None:
        self.prompt_resolver = prompt_resolver
        self.generator = generator
        self.waiter = waiter
        self.materializer = materializer
        self.publisher = publisher

    async def _artifact_url(
        self,
        handle: Optional[GenerationHandle],
        max_wait_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
    ) -> str:
        if handle is None:
            raise GenerationError("Generation provider returned nothing")
        if handle.artifact_url:
            return handle.artifact_url
        if not handle.job_id:
            raise GenerationError("Generation did not return an artifact or a job id")

        logger.info("[EXECUTOR] Generation returned job %s, waiting for completion", handle.job_id)
        job = await self.waiter.await_completion(
            handle.job_id, max_wait_seconds, poll_interval_seconds
        )
        if job is None:
            raise GenerationTimeoutOrFailure(handle.job_id)
        return job.artifacts[0]

    async def _maybe_publish(
        self, post: Post, owner_id: str, action_data: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        if not (action_data.get("auto_publish") and action_data.get("social_platforms")):
            return None
        if self.publisher is None:
            logger.warning("[EXECUTOR] Auto-publish requested but no publisher configured")
            return {"published": False, "reason": "no_publisher"}
        try:
            outcome = await self.publisher.publish(post, owner_id)
        except Exception as e:
            logger.error("[EXECUTOR] Auto-publish of post %s failed: %s", post.id, e)
            return {"published": False, "error": str(e)}
        return outcome.to_dict()

    @staticmethod
    def post_fields(
        owner_id: str,
        action_data: Dict[str, Any],
        resolved: ResolvedPrompt,
        media_url: str,
        handle: GenerationHandle,
    ) -> Dict[str, Any]:
        return {
            "owner_id": owner_id,
            "media_url": media_url,
            "caption": resolved.prompt,
            "nsfw": bool(action_data.get("nsfw", False)),
            "social_platforms": list(action_data.get("social_platforms") or []),
            "source": "cron_job",
            "metadata": {
                "prompt": resolved.prompt,
                "negative_prompt": action_data.get("negative_prompt"),
                "model": action_data.get("model"),
                "parameters": action_data.get("parameters") or {},
                "generation_id": handle.generation_id,
                "custom_prompt_id": resolved.custom_prompt_id,
                "mutation_data": resolved.mutation_data,
                "auto_publish": bool(action_data.get("auto_publish", False)),
            },
        }


class ImageGenerationExecutor(_MediaExecutor):
    action_type = ActionType.GENERATE_IMAGE

    async def generate(
        self,
        action_data: Dict[str, Any],
        owner_id: str,
        mutation_enabled: bool = False,
        max_wait_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
    ) -> Tuple[ResolvedPrompt, GenerationHandle, str]:
        """Resolve the prompt and produce an image URL without creating a post."""
        resolved = await self.prompt_resolver.resolve(action_data, mutation_enabled)
        nsfw = bool(action_data.get("nsfw", False))
        handle = await self.generator.start_generation({
            "type": "image",
            "prompt": resolved.prompt,
            "negative_prompt": action_data.get("negative_prompt"),
            "model": action_data.get("model"),
            "parameters": action_data.get("parameters") or {},
            "owner_id": owner_id,
            "character_id": action_data.get("character_id"),
            "image_type": action_data.get("image_type") or ("nsfw" if nsfw else "sfw"),
            "custom_prompt_id": resolved.custom_prompt_id,
        })
        url = await self._artifact_url(handle, max_wait_seconds, poll_interval_seconds)
        return resolved, handle, url

    async def execute(
        self,
        action_data: Dict[str, Any],
        owner_id: str,
        mutation_enabled: bool = False,
    ) -> Dict[str, Any]:
        resolved, handle, image_url = await self.generate(action_data, owner_id, mutation_enabled)

        post = await self.materializer.create_post_from_image(
            self.post_fields(owner_id, action_data, resolved, image_url, handle)
        )
        logger.info("[EXECUTOR] Image post %s created for %s", post.id, owner_id)

        result: Dict[str, Any] = {
            "post_id": post.id,
            "image_url": image_url,
            "prompt": resolved.prompt,
            "mutation_data": resolved.mutation_data,
        }
        publish = await self._maybe_publish(post, owner_id, action_data)
        if publish is not None:
            result["publish"] = publish
        return result


class VideoGenerationExecutor(_MediaExecutor):
    action_type = ActionType.GENERATE_VIDEO

    async def execute(
        self,
        action_data: Dict[str, Any],
        owner_id: str,
        mutation_enabled: bool = False,
    ) -> Dict[str, Any]:
        resolved = await self.prompt_resolver.resolve(action_data, mutation_enabled)
        handle = await self.generator.start_generation({
            "type": "video",
            "prompt": resolved.prompt,
            "input_image_url": action_data.get("input_image_url"),
            "model": action_data.get("model"),
            "parameters": action_data.get("parameters") or {},
            "owner_id": owner_id,
        })
        video_url = await self._artifact_url(handle)

        fields = self.post_fields(owner_id, action_data, resolved, video_url, handle)
        fields["thumbnail_url"] = handle.thumbnail_url
        fields["metadata"]["input_image_url"] = action_data.get("input_image_url")
        post = await self.materializer.create_post_from_video(fields)
        logger.info("[EXECUTOR] Video post %s created for %s", post.id, owner_id)

        result: Dict[str, Any] = {
            "post_id": post.id,
            "video_url": video_url,
            "prompt": resolved.prompt,
            "mutation_data": resolved.mutation_data,
        }
        publish = await self._maybe_publish(post, owner_id, action_data)
        if publish is not None:
            result["publish"] = publish
        return result


class PublishPostExecutor(GenerationExecutor):
    """Publishes an existing post; the post is marked PUBLISHED on success."""

    action_type = ActionType.PUBLISH_POST

    def __init__(self, materializer: PostMaterializer, publisher: PublishPipeline) -> None:
        self.materializer = materializer
        self.publisher = publisher

    async def execute(
        self,
        action_data: Dict[str, Any],
        owner_id: str,
        mutation_enabled: bool = False,
    ) -> Dict[str, Any]:
        post_id = action_data.get("post_id")
        if not post_id:
            raise PostNotFoundError("Publish action has no post_id")

        post = await self.materializer.get_post_by_id(post_id)
        if post is None:
            raise PostNotFoundError(f"Post {post_id} not found")

        outcome = await self.publisher.publish(post, owner_id)
        if outcome.error:
            raise PublishError(f"Publishing post {post_id} failed: {outcome.error}")

        if outcome.published:
            await self.materializer.update_post_status(post_id, PostStatus.PUBLISHED)

        return {"post_id": post_id, "publish": outcome.to_dict()}


# =============================================================================
# REGISTRY
# =============================================================================


class ExecutorRegistry:
    """Maps action types to executors and runs them for the dispatch loop.

    Args:
        executors: One executor per action type.
        points_ledger: Charged by :meth:`test_run` (optional).
        test_run_cost: Points per test run.
        test_run_max_wait_seconds: Completion deadline for test runs.
        test_run_poll_interval_seconds: Poll interval for test runs.
    """

    def __init__(
        self,
        executors: Dict[ActionType, GenerationExecutor],
        points_ledger: Optional[PointsLedger] = None,
        test_run_cost: int = 10,
        test_run_max_wait_seconds: float = 60,
        test_run_poll_interval_seconds: float = 2,
    ) -> None:
        self.executors = dict(executors)
        self.points_ledger = points_ledger
        self.test_run_cost = test_run_cost
        self.test_run_max_wait_seconds = test_run_max_wait_seconds
        self.test_run_poll_interval_seconds = test_run_poll_interval_seconds
        self.log = ComponentLogger(LogComponent.EXECUTOR)

    async def execute(self, schedule: Schedule) -> ExecutionResult:
        """Run *schedule*'s action.  Failures are returned, never raised."""
        executor = self.executors.get(schedule.action_type)
        if executor is None:
            return ExecutionResult.failed(
                f"No executor registered for {schedule.action_type.value}"
            )

        action_data = dict(schedule.action_data)
        if schedule.character_id:
            action_data.setdefault("character_id", schedule.character_id)
        if schedule.post_id:
            action_data.setdefault("post_id", schedule.post_id)

        try:
            async with self.log.timed(
                f"{schedule.action_type.value} for schedule {schedule.id}",
                schedule_id=schedule.id,
                owner_id=schedule.owner_id,
            ):
                data = await executor.execute(
                    action_data, schedule.owner_id, mutation_enabled=schedule.mutation_enabled
                )
        except Exception as e:
            logger.error("[EXECUTOR] Schedule %s failed: %s", schedule.id, e)
            return ExecutionResult.failed(str(e) or type(e).__name__)

        return ExecutionResult.ok(data)

    async def test_run(self, owner_id: str, action_data: Dict[str, Any]) -> Dict[str, Any]:
        """Generate one preview image now and store it as a private post.

        Points are charged only after the image was produced.

        Raises:
            ValidationError: Unsupported action type, or prompt/model missing.
            GenerationError: Generation failed or timed out.
            InsufficientPointsError: The owner cannot pay for the run.
        """
        action_type = coerce_enum(
            ActionType, action_data.get("action_type", ActionType.GENERATE_IMAGE), "action_type"
        )
        if action_type is not ActionType.GENERATE_IMAGE:
            raise ValidationError("Test runs support image generation only")

        executor = self.executors.get(ActionType.GENERATE_IMAGE)
        if not isinstance(executor, ImageGenerationExecutor):
            raise ValidationError("Image generation is not configured")

        if not action_data.get("model"):
            raise ValidationError("model is required for a test run")
        resolved = await executor.prompt_resolver.resolve(action_data)
        if not resolved.prompt:
            raise ValidationError("prompt is required for a test run")

        # The prompt is already resolved; skip a second random pick or mutation.
        direct = {
            **action_data,
            "prompt": resolved.prompt,
            "use_custom_prompts": False,
            "character_id": None,
            "mutation_enabled": False,
        }
        _, handle, image_url = await executor.generate(
            direct,
            owner_id,
            max_wait_seconds=self.test_run_max_wait_seconds,
            poll_interval_seconds=self.test_run_poll_interval_seconds,
        )

        charged = 0
        if self.points_ledger is not None and self.test_run_cost > 0:
            await self.points_ledger.deduct(owner_id, self.test_run_cost, "Schedule test run")
            charged = self.test_run_cost

        fields = executor.post_fields(owner_id, action_data, resolved, image_url, handle)
        fields.update(source="schedule_test", visibility="private", social_platforms=[])
        post = await executor.materializer.create_post_from_image(fields)

        await self.log.info(
            "Test run produced post",
            data={"post_id": post.id, "owner_id": owner_id, "points": charged},
        )
        return {
            "post_id": post.id,
            "image_url": image_url,
            "prompt": resolved.prompt,
            "points_charged": charged,
        }


__all__ = [
    "ResolvedPrompt",
    "PromptResolver",
    "describe_character",
    "GenerationExecutor",
    "ImageGenerationExecutor",
    "VideoGenerationExecutor",
    "PublishPostExecutor",
    "ExecutorRegistry",
]
