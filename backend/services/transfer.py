# backend/services/transfer.py
"""Client for the external item-transfer system (an untrusted, possibly slow oracle)."""
import logging
from typing import Any, Optional

import httpx

from errors import ExternalServiceDegraded
from models.inventory import ItemSnapshot

logger = logging.getLogger(__name__)


class ItemTransferClient:
    """
    Talks to the item-transfer HTTP API.

    Every failure (not configured, timeout, bad status, unparsable body) is
    reported as ExternalServiceDegraded so callers can degrade instead of
    failing the user's request.
    """

    def __init__(
        self,
        base_url: Optional[str],
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        if not self.base_url:
            raise ExternalServiceDegraded("Item-transfer system is not configured")
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        async with self._client() as client:
            try:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                return response.json()
            except httpx.TimeoutException as e:
                logger.warning("Item-transfer system timed out on %s %s", method, url)
                raise ExternalServiceDegraded("Item-transfer system timed out") from e
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("Item-transfer system error on %s %s: %s", method, url, e)
                raise ExternalServiceDegraded(f"Item-transfer system unavailable: {e}") from e

    async def item_in_holding(self, owner_id: str, item: ItemSnapshot) -> bool:
        """Whether ``item`` is still in ``owner_id``'s inventory."""
        data = await self._request("GET", f"/inventories/{owner_id}", params={"refresh": "true"})

        if not isinstance(data, dict) or not isinstance(data.get("assets"), list):
            raise ExternalServiceDegraded("Could not parse inventory from item-transfer system")

        for asset in data["assets"]:
            if not isinstance(asset, dict):
                continue
            if str(asset.get("assetid")) == item.asset_id:
                return True
            # Some inventories come back without asset ids; fall back to the name
            if not asset.get("assetid") and asset.get("market_hash_name") == item.name:
                return True
        return False

    async def request_transfer(self, owner_id: str, item: ItemSnapshot, destination: str) -> Optional[str]:
        """Ask the transfer system to send ``item`` to ``destination``; returns its offer id."""
        data = await self._request(
            "POST",
            "/transfers",
            json={
                "owner_id": owner_id,
                "asset_id": item.asset_id,
                "item_name": item.name,
                "destination": destination,
            },
        )
        if isinstance(data, dict) and data.get("tradeofferid"):
            return str(data["tradeofferid"])
        return None
