# backend/client/gateway.py
"""Async HTTP client for the trade API, raising the same typed errors the server uses."""
import logging
from decimal import Decimal
from typing import Any, Optional

import httpx

from client.retry import retry_with_backoff
from errors import ExternalServiceDegraded, NotFound, error_from_response
from models.offer import (
    OfferAcceptResponse,
    OfferCounter,
    OfferCreate,
    OfferRecord,
)
from models.trade import (
    CancelRequest,
    Currency,
    CounterOfferRequest,
    SellerConfirmSentRequest,
    SellerRejectRequest,
    StatusHistoryEntry,
    TradeCreate,
    TradeRecord,
    TradeStats,
    TradeSummary,
    TransferVerification,
    TransitionRequest,
)
from models.user import PartyInfo

logger = logging.getLogger(__name__)


class TradeGatewayClient:
    """
    One user's view of the trade API.

    Identity is sent on every request through the X-User-* headers. Error
    responses come back as ``errors.TradeError`` subclasses; network failures
    as ``ExternalServiceDegraded``.
    """

    def __init__(
        self,
        base_url: str,
        user: PartyInfo,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        not_found_retry_delays: tuple[float, ...] = (0.25, 0.5, 1.0),
    ) -> None:
        self.user = user
        self.not_found_retry_delays = not_found_retry_delays

        headers = {"X-User-Id": user.user_id}
        if user.display_name:
            headers["X-User-Name"] = user.display_name
        if user.avatar:
            headers["X-User-Avatar"] = user.avatar
        if user.trade_url:
            headers["X-Trade-Url"] = user.trade_url

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "TradeGatewayClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Trade API request %s %s failed: %s", method, path, e)
            raise ExternalServiceDegraded(f"Trade API unreachable: {e}") from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {"detail": response.text}
            raise error_from_response(response.status_code, body if isinstance(body, dict) else None)

        if not response.content:
            return None
        return response.json()

    # ============== Trades ==============

    async def create_trade(self, trade: TradeCreate) -> TradeRecord:
        data = await self._request("POST", "/trades", json=trade.model_dump(mode="json"))
        return TradeRecord.model_validate(data)

    async def fetch_trade(self, trade_id: str, retry_not_found: bool = False) -> TradeRecord:
        """
        Authoritative read of one trade.

        With ``retry_not_found`` a 404 is retried with backoff, for reads that
        race the write that created the trade.
        """
        async def fetch() -> TradeRecord:
            return TradeRecord.model_validate(await self._request("GET", f"/trades/{trade_id}"))

        if not retry_not_found:
            return await fetch()
        return await retry_with_backoff(
            fetch,
            max_attempts=len(self.not_found_retry_delays) + 1,
            delays=self.not_found_retry_delays,
            retry_on=(NotFound,),
        )

    async def list_trades(self, role: str = "any", status_class: str = "all") -> list[TradeSummary]:
        data = await self._request("GET", "/trades", params={"role": role, "status_class": status_class})
        return [TradeSummary.model_validate(t) for t in data["trades"]]

    async def get_history(self, trade_id: str) -> list[StatusHistoryEntry]:
        data = await self._request("GET", f"/trades/{trade_id}/history")
        return [StatusHistoryEntry.model_validate(e) for e in data["history"]]

    async def transition(self, trade_id: str, request: TransitionRequest) -> TradeRecord:
        data = await self._request(
            "POST",
            f"/trades/{trade_id}/transition",
            json=request.model_dump(mode="json", exclude_none=True),
        )
        return TradeRecord.model_validate(data)

    async def seller_confirm_sent(self, trade_id: str, trade_offer_ref: str) -> TradeRecord:
        return await self.transition(trade_id, SellerConfirmSentRequest(trade_offer_ref=trade_offer_ref))

    async def cancel(self, trade_id: str, reason: Optional[str] = None) -> TradeRecord:
        return await self.transition(trade_id, CancelRequest(reason=reason))

    async def reject(self, trade_id: str, reason: Optional[str] = None) -> TradeRecord:
        return await self.transition(trade_id, SellerRejectRequest(reason=reason))

    async def counter_trade(
        self,
        trade_id: str,
        amount: Decimal,
        currency: Optional[Currency] = None,
        message: Optional[str] = None,
    ) -> OfferRecord:
        body = CounterOfferRequest(amount=amount, currency=currency, message=message)
        data = await self._request(
            "POST",
            f"/trades/{trade_id}/counter-offer",
            json=body.model_dump(mode="json", exclude_none=True),
        )
        return OfferRecord.model_validate(data)

    async def update_price(self, trade_id: str, price: Decimal, currency: Optional[Currency] = None) -> TradeRecord:
        body: dict[str, Any] = {"price": str(price)}
        if currency is not None:
            body["currency"] = Currency(currency).value
        data = await self._request("PATCH", f"/trades/{trade_id}/price", json=body)
        return TradeRecord.model_validate(data)

    async def verify_transfer(self, trade_id: str) -> TransferVerification:
        data = await self._request("GET", f"/trades/{trade_id}/verify-transfer")
        return TransferVerification.model_validate(data)

    async def stats(self) -> TradeStats:
        return TradeStats.model_validate(await self._request("GET", "/trades/stats"))

    # ============== Offers ==============

    async def create_offer(self, offer: OfferCreate) -> OfferRecord:
        data = await self._request("POST", "/offers", json=offer.model_dump(mode="json"))
        return OfferRecord.model_validate(data)

    async def list_offers(self, box: str = "received") -> list[OfferRecord]:
        data = await self._request("GET", f"/offers/{box}")
        return [OfferRecord.model_validate(o) for o in data["offers"]]

    async def get_offer(self, offer_id: str) -> OfferRecord:
        return OfferRecord.model_validate(await self._request("GET", f"/offers/{offer_id}"))

    async def accept_offer(self, offer_id: str) -> OfferAcceptResponse:
        return OfferAcceptResponse.model_validate(await self._request("POST", f"/offers/{offer_id}/accept"))

    async def decline_offer(self, offer_id: str) -> OfferRecord:
        return OfferRecord.model_validate(await self._request("POST", f"/offers/{offer_id}/decline"))

    async def counter_offer(self, offer_id: str, counter: OfferCounter) -> OfferRecord:
        data = await self._request(
            "POST",
            f"/offers/{offer_id}/counter",
            json=counter.model_dump(mode="json", exclude_none=True),
        )
        return OfferRecord.model_validate(data)

    async def cancel_offer(self, offer_id: str) -> OfferRecord:
        return OfferRecord.model_validate(await self._request("POST", f"/offers/{offer_id}/cancel"))
