"""
Late (getlate.dev) social transport client.

Implements the ``SocialTransport`` contract used by the publish pipeline:

- ``resolve_profile()`` reads the owner's Late profile id and connected
  accounts from the ``users`` table.
- ``submit_post()`` creates one Late post that fans out to every listed
  platform/account pair.

Non-2xx answers and network errors raise :class:`PublishError`; the
pipeline turns them into a failed ``PublishOutcome``.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from src.config import PublishConfig
from src.exceptions import PublishError
from src.scheduling.models import SocialConnection, SocialProfile

logger = logging.getLogger(__name__)


class LateClient:
    """Async client for the Late publishing API.

    Args:
        db: Source of the owner's Late account data
            (:class:`~src.database.SupabaseDB`).
        config: API base URL, key and timeout.
    """

    def __init__(self, db: Any, config: Optional[PublishConfig] = None) -> None:
        self.db = db
        self.config = config or PublishConfig()

    async def resolve_profile(self, owner_id: str) -> Optional[SocialProfile]:
        """The owner's Late profile and connected accounts, or ``None``."""
        account = await self.db.get_social_account(owner_id)
        if not account or not account.get("late_profile_id"):
            return None

        connections: List[SocialConnection] = []
        for conn in account.get("sns_connections") or []:
            account_id = conn.get("late_account_id") or conn.get("account_id")
            if conn.get("platform") and account_id:
                connections.append(
                    SocialConnection(platform=conn["platform"], account_id=str(account_id))
                )

        return SocialProfile(
            profile_id=str(account["late_profile_id"]),
            connections=connections,
        )

    async def submit_post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a post via ``POST /posts``.

        Raises:
            PublishError: On network errors or a non-2xx response.
        """
        url = f"{self.config.late_api_base_url.rstrip('/')}/posts"
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.post(
                    url,
                    headers={
                        "Authorization": f"Bearer {self.config.late_api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            raise PublishError(f"Late API request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success:
            message = data.get("message") or data.get("error") if isinstance(data, dict) else None
            raise PublishError(message or f"Late API error: {response.status_code}")

        logger.info(
            "Late post created for %d platform(s)", len(payload.get("platforms", []))
        )
        return data if isinstance(data, dict) else {}


__all__ = ["LateClient"]
