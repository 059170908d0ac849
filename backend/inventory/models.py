from typing import Dict, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from backend.inventory.utils import validate_size_map
from backend.schema.full_schema import InventoryTxnKind


class InventoryCreateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    product_id: Optional[int] = None
    quantity: int = Field(0, ge=0)
    sizes: Dict[str, int] = Field(default_factory=dict)
    low_stock_threshold: Optional[int] = Field(None, ge=0)

    model_config = {"extra": "forbid"}

    @field_validator("sizes")
    @classmethod
    def _sizes(cls, v):
        return validate_size_map(v)


class RestockIn(BaseModel):
    sizes: Dict[str, int] = Field(default_factory=dict, description="signed per-size deltas")
    quantity: Optional[int] = Field(None, description="signed aggregate delta for items without sizes")
    kind: InventoryTxnKind = InventoryTxnKind.RESTORE
    note: Optional[str] = Field(None, max_length=500)

    model_config = {"extra": "forbid"}

    @field_validator("sizes")
    @classmethod
    def _sizes(cls, v):
        return validate_size_map(v, allow_negative=True)

    @field_validator("kind")
    @classmethod
    def _kind(cls, v):
        if v not in (InventoryTxnKind.RESTORE, InventoryTxnKind.ADJUST):
            raise ValueError("kind must be restore or adjust")
        return v

    @model_validator(mode="after")
    def _one_of(self):
        if self.sizes and self.quantity is not None:
            raise ValueError("send either sizes or quantity, not both")
        if not self.sizes and not self.quantity:
            raise ValueError("sizes or a non-zero quantity is required")
        return self
