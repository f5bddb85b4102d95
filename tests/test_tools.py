"""
Tests for the external API clients in src.tools.

HTTP is served by ``httpx.MockTransport`` so no request leaves the process.
"""

import base64
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from src.config import GenerationConfig, PublishConfig
from src.exceptions import GenerationError, PublishError, RetryExhaustedError
from src.tools import GenerationClient, LateClient

_RealAsyncClient = httpx.AsyncClient


@pytest.fixture
def http(monkeypatch):
    """Route every ``httpx.AsyncClient`` through a recording mock transport."""
    state = {"requests": [], "handler": None}

    def transport_handler(request: httpx.Request) -> httpx.Response:
        state["requests"].append(request)
        return state["handler"](request)

    def factory(**kwargs):
        return _RealAsyncClient(transport=httpx.MockTransport(transport_handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", factory)
    return state


def _body(request: httpx.Request) -> dict:
    return json.loads(request.content)


# =============================================================================
# GenerationClient
# =============================================================================


class TestGenerationClientImage:
    @pytest.fixture
    def client(self, tmp_path):
        config = GenerationConfig(api_base_url="https://gen.test/v1/", api_key="gen-key")
        return GenerationClient(config, media_dir=str(tmp_path / "media"))

    @pytest.mark.asyncio
    async def test_synchronous_url(self, client, http):
        http["handler"] = lambda r: httpx.Response(
            200, json={"id": "gen-1", "data": [{"url": "https://cdn.test/a.png"}]}
        )

        handle = await client.start_generation(
            {"type": "image", "prompt": "a fox", "negative_prompt": "blur", "parameters": {"size": "512x512"}}
        )

        assert handle.artifact_url == "https://cdn.test/a.png"
        assert handle.job_id is None
        assert handle.generation_id == "gen-1"
        request = http["requests"][0]
        assert str(request.url) == "https://gen.test/v1/images/generations"
        assert request.headers["Authorization"] == "Bearer gen-key"
        body = _body(request)
        assert body["model"] == GenerationClient.DEFAULT_IMAGE_MODEL
        assert body["size"] == "512x512"
        assert body["negative_prompt"] == "blur"
        assert body["n"] == 1

    @pytest.mark.asyncio
    async def test_task_id_becomes_job(self, client, http):
        http["handler"] = lambda r: httpx.Response(200, json={"task_id": "task-7"})

        handle = await client.start_generation({"type": "image", "prompt": "a fox", "model": "flux"})

        assert handle.job_id == "task-7"
        assert handle.artifact_url is None
        assert _body(http["requests"][0])["model"] == "flux"

    @pytest.mark.asyncio
    async def test_base64_saved_to_disk(self, client, http):
        payload = base64.b64encode(b"\x89PNG fake").decode()
        http["handler"] = lambda r: httpx.Response(200, json={"data": [{"b64_json": payload}]})

        handle = await client.start_generation({"type": "image", "prompt": "a fox"})

        path = Path(handle.artifact_url)
        assert path.suffix == ".png"
        assert path.read_bytes() == b"\x89PNG fake"

    @pytest.mark.asyncio
    async def test_base64_served_from_media_base_url(self, tmp_path, http):
        config = GenerationConfig(
            api_base_url="https://gen.test/v1/",
            api_key="gen-key",
            media_base_url="https://media.test/out/",
        )
        media_dir = tmp_path / "media"
        client = GenerationClient(config, media_dir=str(media_dir))
        payload = base64.b64encode(b"\x89PNG fake").decode()
        http["handler"] = lambda r: httpx.Response(200, json={"data": [{"b64_json": payload}]})

        handle = await client.start_generation({"type": "image", "prompt": "a fox"})

        assert handle.artifact_url.startswith("https://media.test/out/")
        name = handle.artifact_url.rsplit("/", 1)[1]
        assert name.endswith(".png")
        assert (media_dir / name).read_bytes() == b"\x89PNG fake"

    @pytest.mark.asyncio
    async def test_error_status_raises_without_retry(self, client, http):
        http["handler"] = lambda r: httpx.Response(400, text="content policy")

        with pytest.raises(GenerationError, match="400"):
            await client.start_generation({"type": "image", "prompt": "a fox"})
        assert len(http["requests"]) == 1

    @pytest.mark.asyncio
    async def test_empty_answer_raises(self, client, http):
        http["handler"] = lambda r: httpx.Response(200, json={"data": []})

        with pytest.raises(GenerationError):
            await client.start_generation({"type": "image", "prompt": "a fox"})

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, client, http):
        def fail(request):
            raise httpx.ConnectError("refused", request=request)

        http["handler"] = fail
        with patch("src.utils.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(RetryExhaustedError):
                await client.start_generation({"type": "image", "prompt": "a fox"})
        assert len(http["requests"]) == 3


class TestGenerationClientVideo:
    @pytest.mark.asyncio
    async def test_requires_model(self, http):
        with pytest.raises(GenerationError, match="model"):
            await GenerationClient().start_generation({"type": "video", "prompt": "waves"})
        assert http["requests"] == []

    @pytest.mark.asyncio
    async def test_task_response(self, http):
        http["handler"] = lambda r: httpx.Response(200, json={"task_id": "vid-1", "id": "gen-v"})

        handle = await GenerationClient().start_generation({
            "type": "video",
            "prompt": "waves",
            "model": "kling",
            "input_image_url": "https://cdn.test/in.png",
        })

        assert handle.job_id == "vid-1"
        assert handle.generation_id == "gen-v"
        request = http["requests"][0]
        assert request.url.path.endswith("/videos/generations")
        assert _body(request)["image_url"] == "https://cdn.test/in.png"

    @pytest.mark.asyncio
    async def test_immediate_url_wins(self, http):
        http["handler"] = lambda r: httpx.Response(
            200, json={"video_url": "https://cdn.test/v.mp4", "task_id": "t", "thumbnail_url": "https://cdn.test/v.jpg"}
        )

        handle = await GenerationClient().start_generation({"type": "video", "model": "kling"})

        assert handle.artifact_url == "https://cdn.test/v.mp4"
        assert handle.job_id is None
        assert handle.thumbnail_url == "https://cdn.test/v.jpg"


# =============================================================================
# LateClient
# =============================================================================


class TestLateClientProfile:
    @pytest.fixture
    def db(self):
        db = MagicMock()
        db.get_social_account = AsyncMock()
        return db

    @pytest.mark.asyncio
    async def test_resolves_connections(self, db):
        db.get_social_account.return_value = {
            "late_profile_id": "prof-1",
            "sns_connections": [
                {"platform": "twitter", "late_account_id": "acc-tw"},
                {"platform": "instagram", "account_id": 42},
                {"platform": "tiktok"},
            ],
        }

        profile = await LateClient(db).resolve_profile("user-1")

        assert profile.profile_id == "prof-1"
        assert [(c.platform, c.account_id) for c in profile.connections] == [
            ("twitter", "acc-tw"),
            ("instagram", "42"),
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("account", [None, {"sns_connections": []}])
    async def test_no_profile(self, db, account):
        db.get_social_account.return_value = account
        assert await LateClient(db).resolve_profile("user-1") is None


class TestLateClientSubmit:
    @pytest.fixture
    def client(self):
        return LateClient(MagicMock(), PublishConfig(late_api_base_url="https://late.test/api/v1", late_api_key="late-key"))

    @pytest.mark.asyncio
    async def test_success(self, client, http):
        http["handler"] = lambda r: httpx.Response(201, json={"post": {"_id": "late-1"}})
        payload = {"content": "hi", "mediaItems": [], "platforms": [{"platform": "twitter", "accountId": "a"}]}

        data = await client.submit_post(payload)

        assert data == {"post": {"_id": "late-1"}}
        request = http["requests"][0]
        assert str(request.url) == "https://late.test/api/v1/posts"
        assert request.headers["Authorization"] == "Bearer late-key"
        assert _body(request) == payload

    @pytest.mark.asyncio
    async def test_error_message_surfaces(self, client, http):
        http["handler"] = lambda r: httpx.Response(400, json={"message": "media too large"})

        with pytest.raises(PublishError, match="media too large"):
            await client.submit_post({"content": "hi", "platforms": []})

    @pytest.mark.asyncio
    async def test_non_json_error(self, client, http):
        http["handler"] = lambda r: httpx.Response(502, text="<html>bad gateway</html>")

        with pytest.raises(PublishError, match="502"):
            await client.submit_post({"content": "hi", "platforms": []})

    @pytest.mark.asyncio
    async def test_network_error(self, client, http):
        def fail(request):
            raise httpx.ReadTimeout("slow", request=request)

        http["handler"] = fail
        with pytest.raises(PublishError, match="request failed"):
            await client.submit_post({"content": "hi", "platforms": []})
