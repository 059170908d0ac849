"""Payment amount classification.

Pure functions: given an order's expected total, its payment flags and lifecycle
status, and the amount the gateway reports as paid, decide which kind of payment
this is. Nothing here touches the database; `orders.variants` applies the result.
"""
import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from backend.common.utils import money
from backend.config.settings import config_settings
from backend.schema.full_schema import ServiceOrderStatus


class Classification(str, enum.Enum):
    FULL = "full"
    REMAINING_BALANCE = "remaining_balance"
    DOWNPAYMENT = "downpayment"
    DOWNPAYMENT_BY_STATUS = "downpayment_by_status"
    UNCLASSIFIABLE = "unclassifiable"


CREDITED = frozenset({
    Classification.FULL,
    Classification.REMAINING_BALANCE,
    Classification.DOWNPAYMENT,
    Classification.DOWNPAYMENT_BY_STATUS,
})


@dataclass(frozen=True)
class ToleranceBands:
    full_fraction: Decimal = config_settings.FULL_PAYMENT_TOLERANCE
    downpayment_fraction: Decimal = config_settings.DOWNPAYMENT_TOLERANCE
    floor: Decimal = config_settings.TOLERANCE_FLOOR

    def full_tolerance(self, total: Decimal) -> Decimal:
        return max(money(total * self.full_fraction), money(self.floor))

    def downpayment_tolerance(self, total: Decimal) -> Decimal:
        return max(money(total * self.downpayment_fraction), money(self.floor))


DEFAULT_BANDS = ToleranceBands()


@dataclass(frozen=True)
class PaymentSnapshot:
    total: Decimal
    status: int
    down_payment_paid: bool
    balance_paid: bool


def classify_service_payment(snapshot: PaymentSnapshot, paid: Decimal,
                             bands: ToleranceBands = DEFAULT_BANDS) -> Classification:
    total = money(snapshot.total)
    paid = money(paid)
    half = money(total / 2)

    if abs(paid - total) <= bands.full_tolerance(total):
        return Classification.FULL

    if (snapshot.status == ServiceOrderStatus.PENDING_BALANCE
            and snapshot.down_payment_paid and not snapshot.balance_paid):
        return Classification.REMAINING_BALANCE

    if not snapshot.down_payment_paid and abs(paid - half) <= bands.downpayment_tolerance(total):
        return Classification.DOWNPAYMENT

    if snapshot.status == ServiceOrderStatus.PENDING_DOWNPAYMENT and not snapshot.down_payment_paid:
        return Classification.DOWNPAYMENT_BY_STATUS

    return Classification.UNCLASSIFIABLE


def classify_product_payment(total: Decimal, paid: Decimal, bands: ToleranceBands = DEFAULT_BANDS) -> Classification:
    total = money(total)
    if abs(money(paid) - total) <= bands.full_tolerance(total):
        return Classification.FULL
    return Classification.UNCLASSIFIABLE


def is_credited(classification: Optional[Classification]) -> bool:
    return classification in CREDITED
