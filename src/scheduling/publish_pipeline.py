"""
Publishing of materialized posts to social platforms.

``PublishPipeline.publish`` turns a post into a single social transport
call: it resolves the owner's transport profile, applies the adult-content
platform policy, intersects the requested platforms with the owner's
connected accounts and submits the post.  Expected refusals
(``no_platforms``, ``no_profile``, ``nsfw_filtered``, ``no_connections``)
and transport failures are returned as a :class:`PublishOutcome` value and
never raised.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from src.scheduling.models import Post, PostType, PublishOutcome
from src.scheduling.protocols import (
    PostMaterializer,
    PublishRecordStore,
    SocialTransport,
)
from src.utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_BLOCKED_PLATFORMS = ("instagram",)


class PublishPipeline:
    """Publishes posts through the social transport.

    Args:
        transport: Social transport (profile lookup and post submission).
        materializer: Post store; receives the per-platform external ids.
        records: Store for publish records.
        blocked_platforms: Platforms that refuse adult content.  NSFW
            posts are never sent to these.
    """

    def __init__(
        self,
        transport: SocialTransport,
        materializer: PostMaterializer,
        records: PublishRecordStore,
        blocked_platforms: Optional[Iterable[str]] = None,
    ) -> None:
        self.transport = transport
        self.materializer = materializer
        self.records = records
        self.blocked_platforms = {
            p.lower()
            for p in (DEFAULT_BLOCKED_PLATFORMS if blocked_platforms is None else blocked_platforms)
        }

    async def publish(self, post: Post, owner_id: str) -> PublishOutcome:
        """Publish *post* to its ``social_platforms`` on behalf of *owner_id*."""
        if not post.social_platforms:
            logger.info("[PUBLISH] Post %s has no social platforms", post.id)
            return PublishOutcome(published=False, reason="no_platforms")

        profile = await self.transport.resolve_profile(owner_id)
        if profile is None or not profile.profile_id:
            logger.info("[PUBLISH] No transport profile for %s", owner_id)
            return PublishOutcome(published=False, reason="no_profile")

        requested = _unique(p.strip().lower() for p in post.social_platforms if p)
        allowed = [
            p for p in requested
            if not (post.nsfw and p in self.blocked_platforms)
        ]
        if not allowed:
            logger.info(
                "[PUBLISH] Post %s is NSFW and every platform refuses it (%s)",
                post.id,
                ", ".join(post.social_platforms),
            )
            return PublishOutcome(published=False, reason="nsfw_filtered")

        targets = [c for c in profile.connections if c.platform.lower() in allowed]
        if not targets:
            logger.info(
                "[PUBLISH] %s has no connected account for %s", owner_id, ", ".join(allowed)
            )
            return PublishOutcome(published=False, reason="no_connections")

        media_urls = [post.media_url] if post.media_url else []
        platforms_data = [
            {"platform": c.platform, "accountId": c.account_id, "platformSpecificData": {}}
            for c in targets
        ]
        payload: Dict[str, Any] = {
            "content": post.caption or "",
            "mediaItems": [
                {"url": url, "type": "video" if post.post_type is PostType.VIDEO else "image"}
                for url in media_urls
            ],
            "platforms": platforms_data,
        }

        try:
            response = await self.transport.submit_post(payload)
        except Exception as e:
            logger.error("[PUBLISH] Transport rejected post %s: %s", post.id, e)
            return PublishOutcome(published=False, error=str(e))

        external_id = _external_post_id(response)
        published_platforms = _unique(c.platform for c in targets)

        try:
            await self.records.save_publish_record({
                "owner_id": owner_id,
                "post_id": post.id,
                "text": payload["content"],
                "media_urls": media_urls,
                "platforms": platforms_data,
                "external_post_id": external_id,
                "status": "published",
                "created_at": utc_now().isoformat(),
            })
            for platform in published_platforms:
                await self.materializer.add_social_post_id(post.id, platform, external_id)
        except Exception as e:
            # Post is live at this point.
            logger.error(
                "[PUBLISH] Post %s published as %s but recording it failed: %s",
                post.id,
                external_id,
                e,
            )

        logger.info(
            "[PUBLISH] Post %s published to %s (external_id=%s)",
            post.id,
            ", ".join(published_platforms),
            external_id,
        )
        return PublishOutcome(
            published=True,
            external_post_id=external_id,
            platforms=published_platforms,
        )


def _external_post_id(response: Dict[str, Any]) -> str:
    for key in ("id", "_id", "postId"):
        if response.get(key):
            return str(response[key])
    post = response.get("post")
    if isinstance(post, dict):
        return _external_post_id(post)
    return ""


def _unique(items: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


__all__ = ["PublishPipeline", "DEFAULT_BLOCKED_PLATFORMS"]
