# backend/services/offer_service.py
"""Pre-trade negotiation: offers, counter-offers, and turning an accepted offer into a trade."""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from config import Settings
from errors import (
    DuplicateOffer,
    Forbidden,
    InvalidTransition,
    NotFound,
    TradeError,
    Unauthorized,
    ValidationError,
)
from models.events import ChannelEvent, EventType
from models.offer import (
    OfferAcceptResponse,
    OfferCounter,
    OfferCreate,
    OfferRecord,
    OfferStatus,
)
from models.trade import PRE_COMMITMENT_STATUSES, CounterOfferRequest, TradeCreate
from models.user import PartyInfo, require_trade_url
from services.realtime import ConnectionHub
from services.stores import OfferStore
from services.trade_service import TradeService, utcnow

logger = logging.getLogger(__name__)

ANOTHER_OFFER_ACCEPTED = "Another offer was accepted"


class OfferService:
    def __init__(
        self,
        store: OfferStore,
        trades: TradeService,
        hub: ConnectionHub,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.trades = trades
        self.hub = hub
        self.settings = settings
        self.clock = clock

    def _load(self, offer_id: str) -> OfferRecord:
        offer = self.store.get(offer_id)
        if offer is None:
            raise NotFound("Offer not found", offer_id=offer_id)
        return offer

    def _require_pending(self, offer: OfferRecord) -> None:
        if offer.status != OfferStatus.PENDING:
            raise InvalidTransition(
                f"Offer is already {offer.status.value}",
                offer_id=offer.offer_id,
                status=offer.status.value,
            )
        if offer.expires_at <= self.clock():
            raise InvalidTransition("Offer has expired", offer_id=offer.offer_id)

    def _require_recipient(self, offer: OfferRecord, user_id: str, verb: str) -> None:
        if not offer.involves(user_id):
            raise Forbidden("You don't have permission to access this offer", offer_id=offer.offer_id)
        if user_id != offer.recipient_id:
            raise Unauthorized(f"Only the recipient can {verb} this offer", offer_id=offer.offer_id)

    def _set_status(self, offer: OfferRecord, status: OfferStatus, **changes) -> OfferRecord:
        updated = offer.model_copy(update={"status": status, "updated_at": self.clock(), **changes})
        return self.store.compare_and_set(updated, offer.version)

    async def _notify(
        self,
        user_id: str,
        event_type: EventType,
        offer: OfferRecord,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> None:
        payload = {"offer": offer.model_dump(mode="json")}
        if reason:
            payload["reason"] = reason
        await self.hub.notify_user(user_id, ChannelEvent(
            type=event_type,
            trade_id=offer.trade_id,
            actor_id=actor_id,
            payload=payload,
        ))

    def _require_no_pending(self, item_id: str, proposer_id: str, **context) -> None:
        if self.store.find_pending(item_id, proposer_id) is not None:
            raise DuplicateOffer("You already have a pending offer on this item", item_id=item_id, **context)

    def _new_offer(self, **fields) -> OfferRecord:
        now = self.clock()
        return OfferRecord(
            offer_id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(hours=self.settings.offer_ttl_hours),
            **fields,
        )

    # ============== Reads ==============

    def get_offer(self, offer_id: str, user_id: str) -> OfferRecord:
        offer = self._load(offer_id)
        if not offer.involves(user_id):
            raise Forbidden("You don't have permission to view this offer", offer_id=offer_id)
        return offer

    def list_offers(self, user_id: str, box: str) -> list[OfferRecord]:
        return self.store.list_for_user(user_id, box)

    # ============== Negotiation ==============

    async def create_offer(self, buyer: PartyInfo, data: OfferCreate) -> OfferRecord:
        """Buyer proposes an amount for a listed item."""
        if buyer.user_id == data.seller.user_id:
            raise ValidationError("You cannot make an offer on your own item")

        self._require_no_pending(data.item.asset_id, buyer.user_id)

        offer = self.store.insert(self._new_offer(
            item_id=data.item.asset_id,
            item=data.item,
            seller=data.seller,
            buyer=buyer,
            proposer_id=buyer.user_id,
            recipient_id=data.seller.user_id,
            amount=data.amount,
            currency=data.currency,
            message=data.message,
        ))
        logger.info("Offer %s created on item %s by %s", offer.offer_id, offer.item_id, buyer.user_id)

        await self._notify(offer.recipient_id, EventType.NEW_OFFER, offer, buyer.user_id)
        return offer

    async def counter_offer(self, offer_id: str, user_id: str, data: OfferCounter) -> OfferRecord:
        """Recipient answers with another amount; the original becomes ``countered``."""
        original = self._load(offer_id)
        self._require_recipient(original, user_id, "counter")
        self._require_pending(original)
        self._require_no_pending(original.item_id, user_id)

        self._set_status(original, OfferStatus.COUNTERED)

        counter = self.store.insert(self._new_offer(
            item_id=original.item_id,
            item=original.item,
            seller=original.seller,
            buyer=original.buyer,
            proposer_id=user_id,
            recipient_id=original.proposer_id,
            amount=data.amount,
            currency=data.currency or original.currency,
            message=data.message,
            is_counter_offer=True,
            original_offer_id=original.offer_id,
            trade_id=original.trade_id,
        ))
        logger.info("Offer %s countered by %s with %s", original.offer_id, user_id, counter.offer_id)

        await self._notify(counter.recipient_id, EventType.COUNTER_OFFER, counter, user_id)
        return counter

    async def counter_trade(self, trade_id: str, seller_id: str, request: CounterOfferRequest) -> OfferRecord:
        """
        Seller answers an awaiting_seller trade with a different price.

        The trade keeps its status; the counter lives as an offer linked by
        ``trade_id`` until the buyer accepts (re-prices the trade) or declines.
        """
        trade = self.trades.check_counter_offer(trade_id, seller_id)

        self._require_no_pending(trade.item.asset_id, seller_id, trade_id=trade_id)

        counter = self.store.insert(self._new_offer(
            item_id=trade.item.asset_id,
            item=trade.item,
            seller=trade.seller,
            buyer=trade.buyer,
            proposer_id=seller_id,
            recipient_id=trade.buyer_id,
            amount=request.amount,
            currency=request.currency or trade.currency,
            message=request.message,
            is_counter_offer=True,
            original_offer_id=trade.offer_id,
            trade_id=trade_id,
        ))
        logger.info("Trade %s countered by seller with offer %s", trade_id, counter.offer_id)

        await self._notify(counter.recipient_id, EventType.COUNTER_OFFER, counter, seller_id)
        return counter

    async def accept(self, offer_id: str, user_id: str) -> OfferAcceptResponse:
        """
        Recipient accepts.

        A counter on an existing trade re-prices that trade. Any other offer
        opens exactly one new trade and declines the other pending offers on
        the item; the offer's compare-and-set runs first so two racing accepts
        cannot both create one.
        """
        offer = self._load(offer_id)
        self._require_recipient(offer, user_id, "accept")
        self._require_pending(offer)

        if offer.trade_id:
            trade = self.trades.get_trade(offer.trade_id, user_id)
            if trade.status not in PRE_COMMITMENT_STATUSES:
                raise InvalidTransition(
                    f"Trade is already {trade.status.value}, the counter-offer no longer applies",
                    trade_id=trade.trade_id,
                )
            accepted = self._set_status(offer, OfferStatus.ACCEPTED)
            try:
                trade = await self.trades.reprice_from_offer(trade.trade_id, user_id, offer.amount, offer.currency)
            except TradeError:
                self._reopen(accepted)
                raise
        else:
            require_trade_url(offer.buyer)
            self.trades.ensure_item_available(offer.item_id)
            accepted = self._set_status(offer, OfferStatus.ACCEPTED)
            try:
                trade = await self.trades.create_trade(
                    offer.buyer,
                    TradeCreate(item=offer.item, seller=offer.seller, price=offer.amount, currency=offer.currency),
                    offer_id=offer.offer_id,
                    actor_id=user_id,
                )
            except TradeError:
                self._reopen(accepted)
                raise
            accepted = self.store.compare_and_set(
                accepted.model_copy(update={"trade_id": trade.trade_id}),
                accepted.version,
            )

        logger.info("Offer %s accepted by %s (trade %s)", offer_id, user_id, trade.trade_id)
        await self._notify(accepted.proposer_id, EventType.OFFER_ACCEPTED, accepted, user_id)
        if not offer.trade_id:
            await self._decline_competing(accepted, user_id)
        return OfferAcceptResponse(offer=accepted, trade=trade)

    def _reopen(self, accepted: OfferRecord) -> None:
        logger.warning("Offer %s back to pending, its trade could not be written", accepted.offer_id)
        self._set_status(accepted, OfferStatus.PENDING)

    async def _decline_competing(self, accepted: OfferRecord, actor_id: str) -> None:
        """The item is now reserved: every other pending offer on it is declined."""
        for other in self.store.list_pending_for_item(accepted.item_id):
            if other.offer_id == accepted.offer_id:
                continue
            try:
                declined = self._set_status(other, OfferStatus.DECLINED)
            except InvalidTransition:
                logger.info("Offer %s changed while declining, skipping", other.offer_id)
                continue
            await self._notify(
                declined.buyer.user_id, EventType.OFFER_DECLINED, declined, actor_id, reason=ANOTHER_OFFER_ACCEPTED,
            )

    async def decline(self, offer_id: str, user_id: str) -> OfferRecord:
        offer = self._load(offer_id)
        self._require_recipient(offer, user_id, "decline")
        self._require_pending(offer)

        declined = self._set_status(offer, OfferStatus.DECLINED)
        await self._notify(declined.proposer_id, EventType.OFFER_DECLINED, declined, user_id)
        return declined

    async def cancel(self, offer_id: str, user_id: str) -> OfferRecord:
        offer = self._load(offer_id)
        if not offer.involves(user_id):
            raise Forbidden("You don't have permission to access this offer", offer_id=offer_id)
        if user_id != offer.proposer_id:
            raise Unauthorized("Only the proposer can cancel this offer", offer_id=offer_id)
        self._require_pending(offer)

        cancelled = self._set_status(offer, OfferStatus.CANCELLED)
        await self._notify(cancelled.recipient_id, EventType.OFFER_CANCELLED, cancelled, user_id)
        return cancelled

    # ============== Expiry sweep ==============

    def expire_offers(self, dry_run: bool = False) -> int:
        """Mark pending offers past ``expires_at`` as expired."""
        stale = self.store.list_expired(self.clock())
        if dry_run:
            return len(stale)

        expired = 0
        for offer in stale:
            try:
                self._set_status(offer, OfferStatus.EXPIRED)
            except InvalidTransition:
                logger.info("Offer %s changed during sweep, skipping", offer.offer_id)
                continue
            expired += 1
        return expired
