"""
Generation provider client (Laozhang.ai compatible API).

Implements the ``GenerationCollaborator`` contract.  Image requests go to
the OpenAI-compatible ``/images/generations`` endpoint, video requests to
``/videos/generations``.  A provider either answers synchronously with the
artifact URL or asynchronously with a task id, which the completion waiter
then polls through the job store.

Fail-fast philosophy: transient HTTP errors are retried with exponential
backoff; after all attempts are exhausted ``RetryExhaustedError`` is
raised.  Non-2xx answers raise ``GenerationError`` immediately.
"""

import base64
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
import httpx

from src.config import GenerationConfig
from src.exceptions import GenerationError
from src.scheduling.models import GenerationHandle
from src.utils import preview, with_retry

logger = logging.getLogger(__name__)


class GenerationClient:
    """Starts image and video generations.

    Args:
        config: Provider settings (base URL, key, timeout, default size).
        media_dir: Where base64 answers are written to disk.

    Usage::

        client = GenerationClient(get_settings().generation)
        handle = await client.start_generation({"type": "image", "prompt": "..."})
        if handle.job_id:
            job = await waiter.await_completion(handle.job_id)
    """

    DEFAULT_IMAGE_MODEL: str = "gemini-3-pro-image-preview"

    def __init__(
        self,
        config: Optional[GenerationConfig] = None,
        media_dir: str = "data/media",
    ) -> None:
        self.config = config or GenerationConfig()
        self.media_dir = Path(media_dir)

    async def start_generation(self, params: Dict[str, Any]) -> GenerationHandle:
        """Start a generation described by *params*.

        Args:
            params: ``type`` (``"image"`` or ``"video"``), ``prompt``,
                ``model``, ``parameters`` and type-specific keys
                (``negative_prompt``, ``input_image_url``).

        Returns:
            Handle with either ``artifact_url`` or ``job_id`` set.
        """
        if params.get("type") == "video":
            return await self._generate_video(params)
        return await self._generate_image(params)

    # ------------------------------------------------------------------
    # Image
    # ------------------------------------------------------------------

    @with_retry(
        max_attempts=3,
        retryable_exceptions=(httpx.TransportError,),
        operation_name="generate_image",
    )
    async def _generate_image(self, params: Dict[str, Any]) -> GenerationHandle:
        parameters = dict(params.get("parameters") or {})
        body: Dict[str, Any] = {
            "model": params.get("model") or self.DEFAULT_IMAGE_MODEL,
            "prompt": params.get("prompt", ""),
            "size": parameters.pop("size", self.config.default_image_size),
            "n": 1,
            **parameters,
        }
        if params.get("negative_prompt"):
            body["negative_prompt"] = params["negative_prompt"]

        data = await self._post("/images/generations", body)

        job_id = data.get("task_id") or data.get("taskId")
        if job_id:
            logger.info("Image generation queued as task %s", job_id)
            return GenerationHandle(job_id=str(job_id), generation_id=data.get("id"))

        items = data.get("data") or []
        if not items:
            raise GenerationError("Image API returned neither data nor task id")
        item = items[0]

        if item.get("url"):
            image_url = item["url"]
        elif item.get("b64_json"):
            image_url = await self._save_base64(item["b64_json"], "png")
        else:
            raise GenerationError(f"Unexpected API response format: {list(item.keys())}")

        logger.info(
            "Image generated: model=%s, prompt=%s",
            body["model"],
            preview(body["prompt"], 60),
        )
        return GenerationHandle(
            artifact_url=image_url,
            generation_id=data.get("id"),
            metadata={"model": body["model"], "size": body["size"]},
        )

    # ------------------------------------------------------------------
    # Video
    # ------------------------------------------------------------------

    @with_retry(
        max_attempts=3,
        retryable_exceptions=(httpx.TransportError,),
        operation_name="generate_video",
    )
    async def _generate_video(self, params: Dict[str, Any]) -> GenerationHandle:
        if not params.get("model"):
            raise GenerationError("Video generation requires a model")

        body: Dict[str, Any] = {
            "model": params["model"],
            "prompt": params.get("prompt", ""),
            **(params.get("parameters") or {}),
        }
        if params.get("input_image_url"):
            body["image_url"] = params["input_image_url"]

        data = await self._post("/videos/generations", body)

        job_id = data.get("task_id") or data.get("taskId")
        video_url = data.get("video_url") or data.get("url")
        if not job_id and not video_url:
            raise GenerationError("Video API returned neither a URL nor a task id")

        logger.info("Video generation started: model=%s, task=%s", body["model"], job_id)
        return GenerationHandle(
            artifact_url=video_url,
            job_id=str(job_id) if job_id and not video_url else None,
            generation_id=data.get("id"),
            thumbnail_url=data.get("thumbnail_url"),
            metadata={"model": body["model"]},
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
            response = await client.post(
                f"{self.config.api_base_url.rstrip('/')}{path}",
                headers={
                    "Authorization": f"Bearer {self.config.api_key}",
                    "Content-Type": "application/json",
                },
                json=body,
            )

        if response.status_code >= 300:
            raise GenerationError(
                f"Generation API error {response.status_code}: {response.text[:500]}"
            )
        return response.json()

    async def _save_base64(self, b64_data: str, extension: str) -> str:
        """Write a base64 answer to the media directory.

        Returns the file's public URL when ``media_base_url`` is set, else
        the local path, which social platforms cannot fetch.
        """
        self.media_dir.mkdir(parents=True, exist_ok=True)
        path = self.media_dir / f"{uuid.uuid4().hex}.{extension}"
        async with aiofiles.open(path, "wb") as f:
            await f.write(base64.b64decode(b64_data))
        logger.info("Generated image saved to %s", path)

        if self.config.media_base_url:
            return f"{self.config.media_base_url.rstrip('/')}/{path.name}"
        logger.warning(
            "No media_base_url configured; %s is local only and cannot be published",
            path,
        )
        return str(path)


__all__ = ["GenerationClient"]
