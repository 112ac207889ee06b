# backend/models/inventory.py
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ItemSnapshot(BaseModel):
    """
    Item data captured from the inventory when a trade or offer is created.

    The inventory item may change later (renamed, re-listed, traded away), so
    trades keep this copy and never read the live item again.
    """
    asset_id: str = Field(min_length=1, description="Inventory asset identifier")
    name: str = Field(min_length=1, max_length=200, description="Market hash name")
    image_url: Optional[str] = None
    wear: Optional[str] = Field(default=None, description="e.g. Factory New, Field-Tested")
    rarity: Optional[str] = None
    float_value: Optional[float] = Field(default=None, ge=0, le=1)
    pattern: Optional[int] = Field(default=None, ge=0, description="Paint seed")

    model_config = ConfigDict(frozen=True, from_attributes=True)
