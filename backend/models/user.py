# backend/models/user.py
import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from errors import ValidationError


STEAM_TRADE_URL_PATTERN = re.compile(
    r"^https?://steamcommunity\.com/tradeoffer/new/\?partner=\d+&token=[A-Za-z0-9_-]+$"
)


class PartyInfo(BaseModel):
    """A trade participant as supplied by the identity provider."""
    user_id: str = Field(min_length=1)
    display_name: Optional[str] = None
    avatar: Optional[str] = None
    trade_url: Optional[str] = Field(
        default=None,
        description="Where items for this user must be sent (Steam trade URL)",
    )

    model_config = ConfigDict(from_attributes=True)


def require_trade_url(party: PartyInfo) -> str:
    """Return the party's trade URL, rejecting missing or malformed ones."""
    if not party.trade_url:
        raise ValidationError(
            "A Steam trade URL is required to receive items",
            user_id=party.user_id,
        )
    if not STEAM_TRADE_URL_PATTERN.match(party.trade_url.strip()):
        raise ValidationError("Invalid trade URL format", user_id=party.user_id)
    return party.trade_url.strip()
