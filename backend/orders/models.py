from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator
from backend.inventory.utils import normalize_size_label
from backend.schema.full_schema import PaymentOption


class OrderLineIn(BaseModel):
    product_id: int
    size: Optional[str] = Field(None, max_length=16)
    quantity: int = Field(1, gt=0, le=100)

    @field_validator("size")
    @classmethod
    def _size(cls, v):
        return normalize_size_label(v)


class ProductOrderIn(BaseModel):
    items: List[OrderLineIn] = Field(..., min_length=1)
    voucher_code: Optional[str] = Field(None, max_length=64)

    model_config = {"extra": "forbid"}


class ServiceOrderIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=4000)
    items: List[OrderLineIn] = Field(default_factory=list)
    payment_option: PaymentOption = PaymentOption.FULL

    model_config = {"extra": "forbid"}


class CancelIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class TransitionIn(BaseModel):
    status: int


class QuoteIn(BaseModel):
    subtotal: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    delivery_fee: Optional[Decimal] = Field(None, ge=0, max_digits=12, decimal_places=2)


class ResolveIn(BaseModel):
    note: Optional[str] = Field(None, max_length=500)
