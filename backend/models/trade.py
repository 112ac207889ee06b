# backend/models/trade.py
import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError
from models.inventory import ItemSnapshot
from models.user import PartyInfo


# ============== Enums ==============

class Currency(str, Enum):
    USD = "USD"
    GEL = "GEL"


class TradeStatus(str, Enum):
    """Trade lifecycle states."""
    CREATED = "created"
    PENDING = "pending"
    AWAITING_SELLER = "awaiting_seller"
    AWAITING_BUYER = "awaiting_buyer"
    ACCEPTED = "accepted"
    OFFER_SENT = "offer_sent"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REJECTED = "rejected"
    EXPIRED = "expired"


class TradeAction(str, Enum):
    """Actions a client (or the expiry sweep) can request on a trade."""
    SELLER_INITIATE = "seller-initiate"
    SELLER_CONFIRM_SENT = "seller-confirm-sent"
    BUYER_CONFIRM = "buyer-confirm"
    SELLER_REJECT = "seller-reject"
    CANCEL = "cancel"
    COUNTER_OFFER = "counter-offer"
    EXPIRE = "expire"
    FAIL = "fail"


TERMINAL_STATUSES = frozenset({
    TradeStatus.COMPLETED,
    TradeStatus.CANCELLED,
    TradeStatus.FAILED,
    TradeStatus.REJECTED,
    TradeStatus.EXPIRED,
})

# Price may only change before the seller has sent the item
PRE_COMMITMENT_STATUSES = frozenset({
    TradeStatus.CREATED,
    TradeStatus.PENDING,
    TradeStatus.AWAITING_SELLER,
    TradeStatus.ACCEPTED,
})

# One of the parties has to do something soon
ACTION_REQUIRED_STATUSES = frozenset({
    TradeStatus.AWAITING_SELLER,
    TradeStatus.ACCEPTED,
    TradeStatus.AWAITING_BUYER,
    TradeStatus.OFFER_SENT,
    TradeStatus.AWAITING_CONFIRMATION,
})

Money = Annotated[Decimal, Field(gt=0, max_digits=12, decimal_places=2)]


# ============== Record Schemas ==============

class StatusHistoryEntry(BaseModel):
    """One append-only entry of a trade's status log."""
    sequence: int = Field(ge=0, description="Server-assigned append order")
    status: TradeStatus
    timestamp: datetime
    actor_id: Optional[str] = None
    note: Optional[str] = None


class PricePoint(BaseModel):
    """A previous price of the trade, kept when the seller re-prices."""
    price: Decimal
    currency: Currency
    changed_at: datetime
    changed_by: str


class TradeRecord(BaseModel):
    """Full trade document as stored and returned to the parties."""
    trade_id: str
    buyer_id: str
    seller_id: str
    buyer: PartyInfo
    seller: PartyInfo
    item: ItemSnapshot
    price: Decimal
    currency: Currency = Currency.USD
    price_history: list[PricePoint] = []
    status: TradeStatus
    status_history: list[StatusHistoryEntry] = []

    # External trade offer issued by the item-transfer system
    trade_offer_ref: Optional[str] = None
    # Offer this trade was created from, if any
    offer_id: Optional[str] = None

    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    version: int = Field(default=0, ge=0)

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def role_of(self, user_id: Optional[str]) -> Optional[str]:
        """Return "buyer", "seller" or None for a user id."""
        if user_id is None:
            return None
        if user_id == self.buyer_id:
            return "buyer"
        if user_id == self.seller_id:
            return "seller"
        return None


class TradeSummary(BaseModel):
    """Compact trade entry for list views."""
    trade_id: str
    status: TradeStatus
    role: Optional[Literal["buyer", "seller"]] = None
    item_name: str
    item_image_url: Optional[str] = None
    price: Decimal
    currency: Currency
    buyer_id: str
    buyer_name: Optional[str] = None
    seller_id: str
    seller_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, trade: TradeRecord, user_id: Optional[str] = None) -> "TradeSummary":
        return cls(
            trade_id=trade.trade_id,
            status=trade.status,
            role=trade.role_of(user_id),
            item_name=trade.item.name,
            item_image_url=trade.item.image_url,
            price=trade.price,
            currency=trade.currency,
            buyer_id=trade.buyer_id,
            buyer_name=trade.buyer.display_name,
            seller_id=trade.seller_id,
            seller_name=trade.seller.display_name,
            created_at=trade.created_at,
            updated_at=trade.updated_at,
        )


# ============== Create Schemas ==============

class TradeCreate(BaseModel):
    """Buyer commits to purchase a listed item."""
    item: ItemSnapshot
    seller: PartyInfo
    price: Money
    currency: Currency = Currency.USD


class PriceUpdate(BaseModel):
    """Seller re-prices a trade that has not been committed yet."""
    price: Money
    currency: Optional[Currency] = None


# ============== Transition Schemas ==============

TRADE_OFFER_URL_PATTERN = re.compile(r"steamcommunity\.com/tradeoffer/(\d+)")
TRADE_OFFER_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def normalize_trade_offer_ref(value: str) -> str:
    """Accept a Steam trade offer URL, a numeric id or an opaque reference token."""
    value = value.strip()
    match = TRADE_OFFER_URL_PATTERN.search(value)
    if match:
        return match.group(1)
    if TRADE_OFFER_TOKEN_PATTERN.match(value):
        return value
    raise ValueError("Please enter a valid Steam trade offer ID or URL")


class SellerInitiateRequest(BaseModel):
    action: Literal["seller-initiate"] = "seller-initiate"


class SellerConfirmSentRequest(BaseModel):
    action: Literal["seller-confirm-sent"] = "seller-confirm-sent"
    trade_offer_ref: str = Field(description="Trade offer id or URL from the transfer system")

    @field_validator("trade_offer_ref")
    @classmethod
    def _check_ref(cls, value: str) -> str:
        return normalize_trade_offer_ref(value)


class BuyerConfirmRequest(BaseModel):
    action: Literal["buyer-confirm"] = "buyer-confirm"


class SellerRejectRequest(BaseModel):
    action: Literal["seller-reject"] = "seller-reject"
    reason: Optional[str] = Field(default=None, max_length=200)


class CancelRequest(BaseModel):
    action: Literal["cancel"] = "cancel"
    reason: Optional[str] = Field(default=None, max_length=200, description="Optional cancellation reason")


class CounterOfferRequest(BaseModel):
    action: Literal["counter-offer"] = "counter-offer"
    amount: Money
    currency: Optional[Currency] = None
    message: Optional[str] = Field(default=None, max_length=500)


TransitionRequest = Annotated[
    Union[
        SellerInitiateRequest,
        SellerConfirmSentRequest,
        BuyerConfirmRequest,
        SellerRejectRequest,
        CancelRequest,
        CounterOfferRequest,
    ],
    Field(discriminator="action"),
]

_transition_adapter: TypeAdapter = TypeAdapter(TransitionRequest)


def parse_transition_request(payload: Any) -> TransitionRequest:
    """Validate a raw transition payload into its tagged request type."""
    try:
        return _transition_adapter.validate_python(payload)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Malformed transition request: {problems}")


# ============== Query/Filter Schemas ==============

class TradeFilters(BaseModel):
    """Filters for listing a user's trades."""
    role: Literal["buyer", "seller", "any"] = "any"
    status_class: Literal["active", "historical", "all"] = "all"


class TradeListResponse(BaseModel):
    trades: list[TradeSummary]
    total: int


class TradeHistoryResponse(BaseModel):
    trade_id: str
    history: list[StatusHistoryEntry]
    total: int


# ============== Advisory / Statistics Schemas ==============

class TransferVerification(BaseModel):
    """Advisory answer to "has the item left the seller's inventory?"."""
    trade_id: str
    state: Literal["transferred", "still_in_holding", "unknown"]
    can_confirm_receipt: bool
    message: str
    checked_at: datetime


class TradeStats(BaseModel):
    """Summary statistics for a user's trades."""
    user_id: str
    total_trades: int
    active_trades: int
    completed_trades: int
    cancelled_trades: int
    total_value: Decimal


# ============== Admin Schemas ==============

class ExpirySweepResponse(BaseModel):
    """Response from the stale trade/offer sweep."""
    trades_expired: int = Field(description="awaiting_seller trades moved to expired")
    trades_failed: int = Field(description="Undelivered trades moved to failed")
    offers_expired: int = Field(description="Pending offers past their expiry")
    dry_run: bool = Field(description="Whether this was a preview (no updates)")
