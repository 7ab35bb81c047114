"""
Notification dispatcher adapter (push delivery itself is out of scope).

``send`` never raises: a failed delivery is logged and reported as False so
callers can carry on. Deadlines, not notifications, drive the dispatch state.
"""
import logging
from typing import Any

import httpx

from dispatch_engine.config import Settings

logger = logging.getLogger(__name__)


class HttpNotifier:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.notification_base_url,
                timeout=self.settings.collaborator_timeout_seconds,
                headers={"Authorization": f"Bearer {self.settings.collaborator_api_key}"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, user_id: str, payload: dict[str, Any]) -> bool:
        try:
            resp = await self._http().post(
                "/v1/notifications", json={"user_id": user_id, "payload": payload}
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Notification to %s failed (type=%s): %s", user_id, payload.get("type"), exc
            )
            return False
        return True
