from __future__ import annotations

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class HttpRelayBoard:
    """
    Actuator driver for a networked relay board with a small JSON API:

        GET  {base_url}/relay/{n}  -> {"state": "on" | "off"}
        POST {base_url}/relay/{n}  <- {"state": "on" | "off"}
    """

    def __init__(
        self,
        base_url: str = "http://192.168.1.50",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._last_known: dict[int, bool] = {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def get_output(self, actuator_id: int) -> bool:
        try:
            async with self._client() as client:
                resp = await client.get(f"{self._base_url}/relay/{actuator_id}")
                resp.raise_for_status()
                data = resp.json()
                self._last_known[actuator_id] = data["state"] == "on"
        except Exception:
            logger.warning(
                "Relay %s get_output failed, returning last known state: %s",
                actuator_id,
                self._last_known.get(actuator_id, False),
                exc_info=True,
            )
        return self._last_known.get(actuator_id, False)

    async def set_output(self, actuator_id: int, level: bool) -> bool:
        switch_val = "on" if level else "off"
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self._base_url}/relay/{actuator_id}",
                    json={"state": switch_val},
                )
                resp.raise_for_status()
        except Exception:
            logger.warning(
                "Relay %s set_output(%s) failed",
                actuator_id,
                switch_val,
                exc_info=True,
            )
            return False
        self._last_known[actuator_id] = level
        logger.info("Relay %s set_output=%s", actuator_id, switch_val)
        return True
