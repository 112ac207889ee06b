# backend/models/offer.py
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.inventory import ItemSnapshot
from models.trade import Currency, Money, TradeRecord
from models.user import PartyInfo


class OfferStatus(str, Enum):
    """Pre-trade negotiation states."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    COUNTERED = "countered"  # Superseded by a counter-offer
    EXPIRED = "expired"


class OfferCreate(BaseModel):
    """Schema for proposing a price on a listed item."""
    item: ItemSnapshot
    seller: PartyInfo = Field(description="Current owner of the item")
    amount: Money
    currency: Currency = Currency.USD
    message: Optional[str] = Field(default=None, max_length=500)


class OfferCounter(BaseModel):
    """Schema for answering an offer with a different amount."""
    amount: Money
    currency: Optional[Currency] = None
    message: Optional[str] = Field(default=None, max_length=500)


class OfferRecord(BaseModel):
    """Full offer document."""
    offer_id: str
    item_id: str
    item: ItemSnapshot
    seller: PartyInfo
    buyer: PartyInfo
    proposer_id: str
    recipient_id: str
    amount: Decimal
    currency: Currency = Currency.USD
    message: Optional[str] = None
    status: OfferStatus = OfferStatus.PENDING

    # Counter-offer chain
    is_counter_offer: bool = False
    original_offer_id: Optional[str] = None

    # Trade produced by acceptance, or countered by the seller
    trade_id: Optional[str] = None

    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    version: int = Field(default=0, ge=0)

    model_config = ConfigDict(from_attributes=True)

    def involves(self, user_id: str) -> bool:
        return user_id in (self.proposer_id, self.recipient_id)


class OfferListResponse(BaseModel):
    offers: list[OfferRecord]
    total: int
    box: Literal["received", "sent"]


class OfferAcceptResponse(BaseModel):
    """Accepted offer plus the trade it produced or re-priced."""
    offer: OfferRecord
    trade: Optional[TradeRecord] = None
