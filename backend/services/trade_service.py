# backend/services/trade_service.py
"""Trade operations behind the HTTP routes: reads, transitions, re-pricing and the expiry sweep."""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from config import Settings
from errors import (
    AlreadyTerminal,
    ExternalServiceDegraded,
    Forbidden,
    InvalidTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from models.events import ChannelEvent, EventType
from models.trade import (
    PRE_COMMITMENT_STATUSES,
    TERMINAL_STATUSES,
    CancelRequest,
    Currency,
    PricePoint,
    SellerConfirmSentRequest,
    SellerRejectRequest,
    StatusHistoryEntry,
    TradeAction,
    TradeCreate,
    TradeFilters,
    TradeRecord,
    TradeStats,
    TradeStatus,
    TradeSummary,
    TransferVerification,
    TransitionRequest,
)
from models.user import PartyInfo, require_trade_url
from services.lifecycle import SYSTEM_ACTOR, TRANSITIONS, append_status, check_transition
from services.realtime import ConnectionHub
from services.stores import TradeStore
from services.transfer import ItemTransferClient

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset(s for s in TradeStatus if s not in TERMINAL_STATUSES)

TRANSITION_NOTES = {
    TradeAction.SELLER_INITIATE: "Seller accepted the trade",
    TradeAction.SELLER_CONFIRM_SENT: "Seller sent trade offer",
    TradeAction.BUYER_CONFIRM: "Buyer confirmed receipt",
    TradeAction.EXPIRE: "Seller did not respond in time",
    TradeAction.FAIL: "Item was not delivered in time",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TradeService:
    def __init__(
        self,
        store: TradeStore,
        hub: ConnectionHub,
        transfer: ItemTransferClient,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hub = hub
        self.transfer = transfer
        self.settings = settings
        self.clock = clock

    # ============== Reads ==============

    def _load(self, trade_id: str) -> TradeRecord:
        trade = self.store.get(trade_id)
        if trade is None:
            raise NotFound("Trade not found", trade_id=trade_id)
        return trade

    def get_trade(self, trade_id: str, user_id: str) -> TradeRecord:
        """Full trade record, visible to the buyer and seller only."""
        trade = self._load(trade_id)
        if trade.role_of(user_id) is None:
            raise Forbidden("You don't have permission to view this trade", trade_id=trade_id)
        return trade

    def list_trades(self, user_id: str, filters: TradeFilters) -> list[TradeSummary]:
        statuses = None
        if filters.status_class == "active":
            statuses = ACTIVE_STATUSES
        elif filters.status_class == "historical":
            statuses = TERMINAL_STATUSES

        trades = self.store.list_for_user(user_id, role=filters.role, statuses=statuses)
        return [TradeSummary.from_record(t, user_id) for t in trades]

    def get_history(self, trade_id: str, user_id: str) -> list[StatusHistoryEntry]:
        return list(self.get_trade(trade_id, user_id).status_history)

    def stats(self, user_id: str) -> TradeStats:
        trades = self.store.list_for_user(user_id)
        return TradeStats(
            user_id=user_id,
            total_trades=len(trades),
            active_trades=sum(1 for t in trades if t.status in ACTIVE_STATUSES),
            completed_trades=sum(1 for t in trades if t.status == TradeStatus.COMPLETED),
            cancelled_trades=sum(
                1 for t in trades if t.status in (TradeStatus.CANCELLED, TradeStatus.FAILED)
            ),
            total_value=sum((t.price for t in trades), Decimal("0")),
        )

    # ============== Creation ==============

    def ensure_item_available(self, item_id: str) -> None:
        """An item can be in at most one non-terminal trade."""
        active = self.store.list_active_for_item(item_id)
        if active:
            raise InvalidTransition(
                "This item is already in an active trade",
                item_id=item_id,
                trade_id=active[0].trade_id,
            )

    async def create_trade(
        self,
        buyer: PartyInfo,
        data: TradeCreate,
        offer_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> TradeRecord:
        """Open a trade in awaiting_seller for a purchase or an accepted offer."""
        if buyer.user_id == data.seller.user_id:
            raise ValidationError("You cannot buy your own item")
        require_trade_url(buyer)
        self.ensure_item_available(data.item.asset_id)

        now = self.clock()
        trade = TradeRecord(
            trade_id=str(uuid.uuid4()),
            buyer_id=buyer.user_id,
            seller_id=data.seller.user_id,
            buyer=buyer,
            seller=data.seller,
            item=data.item,
            price=data.price,
            currency=data.currency,
            status=TradeStatus.AWAITING_SELLER,
            status_history=[
                StatusHistoryEntry(
                    sequence=0,
                    status=TradeStatus.AWAITING_SELLER,
                    timestamp=now,
                    actor_id=actor_id or buyer.user_id,
                    note="Trade created from accepted offer" if offer_id else "Trade created, waiting for seller",
                )
            ],
            offer_id=offer_id,
            created_at=now,
            updated_at=now,
        )

        saved = self.store.insert(trade)
        logger.info("Trade %s created: buyer=%s seller=%s", saved.trade_id, saved.buyer_id, saved.seller_id)

        event = ChannelEvent(
            type=EventType.TRADE_CREATED,
            trade_id=saved.trade_id,
            new_status=saved.status.value,
            actor_id=actor_id or buyer.user_id,
            payload={"trade": saved.model_dump(mode="json"), "openTradePanel": True},
        )
        await self.hub.notify_user(saved.seller_id, event)
        await self.hub.notify_user(saved.buyer_id, event)
        return saved

    # ============== Transitions ==============

    async def transition(self, trade_id: str, request: TransitionRequest, actor_id: str) -> TradeRecord:
        """Validate and apply one requested action; first write wins on races."""
        action = TradeAction(request.action)
        if action == TradeAction.COUNTER_OFFER:
            raise InvalidTransition("Counter-offers are handled by the offer service", trade_id=trade_id)

        trade = self._load(trade_id)
        to_status = check_transition(trade, action, actor_id)

        note = TRANSITION_NOTES.get(action)
        extra = {}
        if isinstance(request, CancelRequest):
            note = request.reason or f"Cancelled by {trade.role_of(actor_id)}"
        elif isinstance(request, SellerRejectRequest):
            note = request.reason or "Rejected by seller"
        elif isinstance(request, SellerConfirmSentRequest):
            extra["trade_offer_ref"] = request.trade_offer_ref

        updated = append_status(trade.model_copy(update=extra), to_status, actor_id, self.clock(), note)
        saved = self.store.compare_and_set(updated, trade.version)
        logger.info(
            "Trade %s: %s -> %s by %s",
            trade_id, trade.status.value, saved.status.value, actor_id,
        )

        await self.hub.publish_trade_update(saved, actor_id)

        if action == TradeAction.SELLER_INITIATE:
            await self._request_transfer(saved)
        return saved

    def check_counter_offer(self, trade_id: str, actor_id: str) -> TradeRecord:
        """Validate a seller counter-offer on a trade without changing it."""
        trade = self._load(trade_id)
        check_transition(trade, TradeAction.COUNTER_OFFER, actor_id)
        return trade

    async def _request_transfer(self, trade: TradeRecord) -> None:
        """Best-effort hand-off to the transfer system; never fails the transition."""
        try:
            await self.transfer.request_transfer(trade.seller_id, trade.item, require_trade_url(trade.buyer))
        except (ExternalServiceDegraded, ValidationError) as e:
            logger.warning("Could not request transfer for trade %s: %s", trade.trade_id, e)

    # ============== Pricing ==============

    async def update_price(
        self,
        trade_id: str,
        actor_id: str,
        price: Decimal,
        currency: Optional[Currency] = None,
    ) -> TradeRecord:
        """Seller re-prices a trade that is still pre-commitment."""
        trade = self._load(trade_id)
        role = trade.role_of(actor_id)
        if role is None:
            raise Forbidden("You don't have permission to change this trade", trade_id=trade_id)
        if trade.is_terminal:
            raise AlreadyTerminal(f"Trade is already {trade.status.value}", trade_id=trade_id)
        if role != "seller":
            raise Unauthorized("Only the seller can change the price", trade_id=trade_id)
        return await self._reprice(trade, price, currency, actor_id)

    async def reprice_from_offer(
        self,
        trade_id: str,
        actor_id: str,
        price: Decimal,
        currency: Optional[Currency] = None,
    ) -> TradeRecord:
        """Apply an accepted counter-offer's amount to its trade."""
        trade = self._load(trade_id)
        if trade.is_terminal:
            raise AlreadyTerminal(f"Trade is already {trade.status.value}", trade_id=trade_id)
        return await self._reprice(trade, price, currency, actor_id)

    async def _reprice(
        self,
        trade: TradeRecord,
        price: Decimal,
        currency: Optional[Currency],
        actor_id: str,
    ) -> TradeRecord:
        if trade.status not in PRE_COMMITMENT_STATUSES:
            raise InvalidTransition(
                f"Price cannot change once the trade is {trade.status.value}",
                trade_id=trade.trade_id,
            )

        now = self.clock()
        history = list(trade.price_history)
        history.append(PricePoint(
            price=trade.price,
            currency=trade.currency,
            changed_at=now,
            changed_by=actor_id,
        ))
        updated = trade.model_copy(update={
            "price": price,
            "currency": currency or trade.currency,
            "price_history": history,
            "updated_at": now,
        })

        saved = self.store.compare_and_set(updated, trade.version)
        logger.info("Trade %s re-priced %s -> %s by %s", trade.trade_id, trade.price, saved.price, actor_id)
        await self.hub.publish_trade_update(saved, actor_id)
        return saved

    # ============== Transfer verification ==============

    async def verify_item_transferred(self, trade_id: str, user_id: str) -> TransferVerification:
        """
        Advisory check that the item has left the seller's inventory.

        Never changes the trade. When the transfer system is slow or down the
        answer is "unknown" instead of an error.
        """
        trade = self._load(trade_id)
        role = trade.role_of(user_id)
        if role is None:
            raise Forbidden("You don't have permission to check this trade", trade_id=trade_id)
        if role != "buyer":
            raise Unauthorized("Only the buyer can verify item receipt", trade_id=trade_id)

        try:
            still_there = await self.transfer.item_in_holding(trade.seller_id, trade.item)
        except ExternalServiceDegraded as e:
            logger.warning("Transfer verification degraded for trade %s: %s", trade_id, e)
            return TransferVerification(
                trade_id=trade_id,
                state="unknown",
                can_confirm_receipt=False,
                message="Could not check seller's inventory. You may need to verify manually or try again later.",
                checked_at=self.clock(),
            )

        if still_there:
            return TransferVerification(
                trade_id=trade_id,
                state="still_in_holding",
                can_confirm_receipt=False,
                message="Item is still in seller's inventory. The trade may not have been completed yet.",
                checked_at=self.clock(),
            )
        return TransferVerification(
            trade_id=trade_id,
            state="transferred",
            can_confirm_receipt=True,
            message="Item has been withdrawn from seller's inventory. You can confirm receipt.",
            checked_at=self.clock(),
        )

    # ============== Expiry sweep ==============

    async def expire_stale_trades(self, dry_run: bool = False) -> tuple[int, int]:
        """
        Move trades nobody acted on to expired (seller never answered) or
        failed (item never delivered). Returns (expired, failed) counts.
        """
        now = self.clock()
        plans = [
            (TradeAction.EXPIRE, now - timedelta(hours=self.settings.seller_response_hours)),
            (TradeAction.FAIL, now - timedelta(hours=self.settings.delivery_window_hours)),
        ]

        counts = []
        for action, cutoff in plans:
            stale = self.store.list_stale(TRANSITIONS[action].from_statuses, cutoff)
            if dry_run:
                counts.append(len(stale))
                continue

            moved = 0
            for trade in stale:
                try:
                    to_status = check_transition(trade, action, SYSTEM_ACTOR)
                    updated = append_status(trade, to_status, SYSTEM_ACTOR, now, TRANSITION_NOTES[action])
                    saved = self.store.compare_and_set(updated, trade.version)
                except (InvalidTransition, AlreadyTerminal) as e:
                    # Someone acted on the trade since we listed it
                    logger.info("Skipping trade %s in sweep: %s", trade.trade_id, e)
                    continue
                await self.hub.publish_trade_update(saved, SYSTEM_ACTOR)
                moved += 1
            counts.append(moved)

        logger.info("Expiry sweep (dry_run=%s): expired=%d failed=%d", dry_run, counts[0], counts[1])
        return counts[0], counts[1]
