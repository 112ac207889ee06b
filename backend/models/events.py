# backend/models/events.py
"""Push channel wire format."""
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class EventType(str, Enum):
    TRADE_UPDATE = "trade_update"
    TRADE_CREATED = "trade_created"
    NEW_OFFER = "new_offer"
    COUNTER_OFFER = "counter_offer"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_DECLINED = "offer_declined"
    OFFER_CANCELLED = "offer_cancelled"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    PONG = "pong"
    ERROR = "error"


def trade_topic(trade_id: str) -> str:
    return f"trade:{trade_id}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


class ChannelEvent(BaseModel):
    """
    One push message, serialised with camelCase keys:
    {"type": "trade_update", "tradeId": ..., "newStatus": ..., "actorId": ..., "payload": {...}}
    """
    type: EventType
    trade_id: Optional[str] = None
    new_status: Optional[str] = None
    actor_id: Optional[str] = None
    payload: Optional[dict[str, Any]] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ClientFrame(BaseModel):
    """Frame sent by a client over the channel."""
    action: Literal["subscribe", "unsubscribe", "ping"]
    topic: Optional[str] = Field(default=None, max_length=200)
