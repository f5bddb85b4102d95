"""Tests for the social publish pipeline."""

import pytest

from src.scheduling.models import Post, PostType, PublishOutcome
from src.scheduling.publish_pipeline import PublishPipeline


def _post(**overrides):
    fields = {
        "id": "post-1",
        "owner_id": "user-1",
        "post_type": PostType.IMAGE,
        "media_url": "https://cdn.example.com/a.png",
        "caption": "Morning light",
        "social_platforms": ["twitter"],
    }
    fields.update(overrides)
    return Post(**fields)


class TestRefusals:
    @pytest.mark.asyncio
    async def test_no_platforms(self, publisher, transport):
        outcome = await publisher.publish(_post(social_platforms=[]), "user-1")
        assert outcome == PublishOutcome(published=False, reason="no_platforms")
        assert transport.payloads == []

    @pytest.mark.asyncio
    async def test_no_profile(self, publisher, transport):
        transport.profile = None
        outcome = await publisher.publish(_post(), "user-1")
        assert outcome.reason == "no_profile"
        assert transport.payloads == []

    @pytest.mark.asyncio
    async def test_nsfw_only_blocked_platform(self, publisher, transport):
        outcome = await publisher.publish(
            _post(nsfw=True, social_platforms=["instagram"]), "user-1"
        )
        assert outcome.published is False
        assert outcome.reason == "nsfw_filtered"
        assert transport.payloads == []

    @pytest.mark.asyncio
    async def test_nsfw_filter_is_case_insensitive(self, publisher, transport):
        outcome = await publisher.publish(
            _post(nsfw=True, social_platforms=["Instagram"]), "user-1"
        )
        assert outcome.reason == "nsfw_filtered"

    @pytest.mark.asyncio
    async def test_no_connections(self, publisher, transport):
        outcome = await publisher.publish(_post(social_platforms=["tiktok"]), "user-1")
        assert outcome.reason == "no_connections"
        assert transport.payloads == []


class TestPublish:
    @pytest.mark.asyncio
    async def test_success_submits_and_records(self, publisher, transport, records, post_store):
        outcome = await publisher.publish(_post(), "user-1")

        assert outcome.published is True
        assert outcome.external_post_id == "late-post-1"
        assert outcome.platforms == ["twitter"]
        assert transport.payloads == [
            {
                "content": "Morning light",
                "mediaItems": [{"url": "https://cdn.example.com/a.png", "type": "image"}],
                "platforms": [
                    {"platform": "twitter", "accountId": "acc-tw", "platformSpecificData": {}}
                ],
            }
        ]
        assert len(records.records) == 1
        assert records.records[0]["post_id"] == "post-1"
        assert records.records[0]["status"] == "published"
        assert post_store.social_ids == [("post-1", "twitter", "late-post-1")]

    @pytest.mark.asyncio
    async def test_platform_names_match_case_insensitively(self, publisher, transport):
        outcome = await publisher.publish(_post(social_platforms=[" Twitter"]), "user-1")
        assert outcome.published is True
        assert outcome.platforms == ["twitter"]
        assert transport.payloads[0]["platforms"][0]["accountId"] == "acc-tw"

    @pytest.mark.asyncio
    async def test_nsfw_drops_only_blocked_platforms(self, publisher, transport):
        outcome = await publisher.publish(
            _post(nsfw=True, social_platforms=["twitter", "instagram"]), "user-1"
        )
        assert outcome.published is True
        assert outcome.platforms == ["twitter"]
        sent = [p["platform"] for p in transport.payloads[0]["platforms"]]
        assert sent == ["twitter"]

    @pytest.mark.asyncio
    async def test_sfw_goes_to_every_connected_platform(self, publisher, post_store):
        outcome = await publisher.publish(
            _post(social_platforms=["twitter", "instagram"]), "user-1"
        )
        assert outcome.platforms == ["twitter", "instagram"]
        assert len(post_store.social_ids) == 2

    @pytest.mark.asyncio
    async def test_video_media_type(self, publisher, transport):
        await publisher.publish(
            _post(post_type=PostType.VIDEO, media_url="https://cdn.example.com/v.mp4"), "user-1"
        )
        assert transport.payloads[0]["mediaItems"] == [
            {"url": "https://cdn.example.com/v.mp4", "type": "video"}
        ]

    @pytest.mark.asyncio
    async def test_nested_external_id(self, publisher, transport):
        transport.response = {"post": {"_id": "nested-9"}}
        outcome = await publisher.publish(_post(), "user-1")
        assert outcome.external_post_id == "nested-9"

    @pytest.mark.asyncio
    async def test_transport_error_is_returned(self, publisher, transport, records):
        transport.error = RuntimeError("rate limited")
        outcome = await publisher.publish(_post(), "user-1")
        assert outcome.published is False
        assert outcome.error == "rate limited"
        assert outcome.reason is None
        assert records.records == []

    @pytest.mark.asyncio
    async def test_record_failure_still_published(self, transport, post_store, records):
        async def broken(record):
            raise RuntimeError("db down")

        records.save_publish_record = broken
        pipeline = PublishPipeline(transport, post_store, records)
        outcome = await pipeline.publish(_post(), "user-1")
        assert outcome.published is True
        assert outcome.external_post_id == "late-post-1"

    @pytest.mark.asyncio
    async def test_custom_blocked_platforms(self, transport, post_store, records):
        pipeline = PublishPipeline(transport, post_store, records, blocked_platforms=["twitter"])
        outcome = await pipeline.publish(
            _post(nsfw=True, social_platforms=["twitter", "instagram"]), "user-1"
        )
        assert outcome.platforms == ["instagram"]


class TestOutcomeToDict:
    def test_refusal(self):
        assert PublishOutcome(published=False, reason="no_profile").to_dict() == {
            "published": False,
            "reason": "no_profile",
        }

    def test_success(self):
        outcome = PublishOutcome(published=True, external_post_id="x", platforms=["twitter"])
        assert outcome.to_dict() == {
            "published": True,
            "external_post_id": "x",
            "platforms": ["twitter"],
        }
