import logging
from typing import Any

import httpx

from dispatch_engine.config import Settings

logger = logging.getLogger(__name__)


class HttpAdminAlerts:
    """Admin alerting sink. Like notifications, a failed alert is logged, never raised."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.alerts_base_url,
                timeout=self.settings.collaborator_timeout_seconds,
                headers={"Authorization": f"Bearer {self.settings.collaborator_api_key}"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def alert(self, payload: dict[str, Any]) -> bool:
        logger.warning("Admin alert: %s", payload.get("alert_type"))
        try:
            resp = await self._http().post("/v1/alerts", json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Admin alert delivery failed (%s): %s", payload.get("alert_type"), exc)
            return False
        return True
