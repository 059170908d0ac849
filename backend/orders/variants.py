"""Order variants sharing one payment and allocation interface.

A row in `orders` is either a product order (catalog items, paid in full) or a
service order (custom work, quoted by an admin, optionally paid half up front).
`order_variant()` wraps the row in the matching class; the reconciliation
pipeline only talks to the `PurchasableOrder` interface.
"""
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from backend.common.errors import AmountUnclassifiable
from backend.common.utils import money, now
from backend.payments.classifier import (
    Classification, PaymentSnapshot, ToleranceBands, DEFAULT_BANDS,
    classify_product_payment, classify_service_payment, is_credited,
)
from backend.schema.full_schema import (
    OrderItem, OrderKind, Orders, PaymentOption, PaymentPurpose, PaymentStatus,
    ProductOrderStatus, ServiceOrderStatus,
)


class PurchasableOrder:
    kind: OrderKind
    status_enum = None

    def __init__(self, order: Orders, items: Optional[List[OrderItem]] = None):
        self.order = order
        self.items = list(items or [])

    @property
    def id(self) -> int:
        return self.order.id

    def compute_expected_total(self) -> Decimal:
        return money(self.order.total_amount)

    def status_name(self) -> str:
        return self.status_enum(self.order.status).name

    def is_terminal(self) -> bool:
        raise NotImplementedError

    def amount_due(self) -> Tuple[Decimal, PaymentPurpose]:
        raise NotImplementedError

    def classify(self, paid: Decimal, bands: ToleranceBands = DEFAULT_BANDS) -> Classification:
        raise NotImplementedError

    def requires_allocation(self, classification: Classification) -> bool:
        return classification in (Classification.FULL, Classification.REMAINING_BALANCE) and bool(
            self.line_items_for_allocation())

    def line_items_for_allocation(self) -> Dict[int, Dict[Optional[str], int]]:
        """{inventory_id: {size_or_None: qty}} for every stock backed line."""
        breakdown: Dict[int, Dict[Optional[str], int]] = {}
        for it in self.items:
            if it.inventory_id is None:
                continue
            sizes = breakdown.setdefault(int(it.inventory_id), {})
            sizes[it.size] = sizes.get(it.size, 0) + int(it.quantity)
        return breakdown

    def record_amount(self, paid: Decimal):
        paid = money(paid)
        self.order.amount_paid = money(self.order.amount_paid) + paid
        self.order.last_paid_amount = paid
        self.order.paid_at = now()

    def is_fully_paid(self) -> bool:
        return bool(self.order.down_payment_paid and self.order.balance_paid)

    def flag_for_reconciliation(self, paid: Decimal, note: str):
        """Keep the money on record without crediting it; an admin settles it."""
        self.record_amount(paid)
        self.order.needs_reconciliation = True
        self.order.reconciliation_note = note

    def apply_classification(self, classification: Classification, paid: Decimal):
        """Mutate the order row for a classified payment. Status never moves backward.

        Raises AmountUnclassifiable after recording an amount that fits no band.
        """
        if not is_credited(classification):
            note = f"unclassifiable payment of {money(paid)} against total {self.compute_expected_total()}"
            self.flag_for_reconciliation(paid, note)
            raise AmountUnclassifiable(note, order_id=self.order.id, amount=str(money(paid)))
        self.record_amount(paid)
        self.order.payment_type = classification.value
        self._apply_credit(classification)

    def _apply_credit(self, classification: Classification):
        raise NotImplementedError

    def _advance_to(self, target: int):
        if self.is_terminal():
            return
        if int(target) > int(self.order.status):
            self.order.status = int(target)


class ProductOrder(PurchasableOrder):
    kind = OrderKind.PRODUCT
    status_enum = ProductOrderStatus

    def is_terminal(self) -> bool:
        return self.order.status in (ProductOrderStatus.DELIVERED, ProductOrderStatus.CANCELLED)

    def amount_due(self) -> Tuple[Decimal, PaymentPurpose]:
        return self.compute_expected_total(), PaymentPurpose.FULL

    def classify(self, paid: Decimal, bands: ToleranceBands = DEFAULT_BANDS) -> Classification:
        return classify_product_payment(self.compute_expected_total(), paid, bands)

    def _apply_credit(self, classification: Classification):
        self.order.down_payment_paid = True
        self.order.balance_paid = True
        if self.order.payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            self.order.payment_status = PaymentStatus.RECEIVED.value
        self._advance_to(ProductOrderStatus.ACCEPTED)


class ServiceOrder(PurchasableOrder):
    kind = OrderKind.SERVICE
    status_enum = ServiceOrderStatus

    def is_terminal(self) -> bool:
        return self.order.status in (ServiceOrderStatus.COMPLETED, ServiceOrderStatus.CANCELLED)

    def amount_due(self) -> Tuple[Decimal, PaymentPurpose]:
        total = self.compute_expected_total()
        if self.order.payment_option == PaymentOption.FULL.value:
            return total, PaymentPurpose.FULL
        if not self.order.down_payment_paid:
            return money(total / 2), PaymentPurpose.DOWNPAYMENT
        return money(total - money(self.order.amount_paid)), PaymentPurpose.BALANCE

    def snapshot(self) -> PaymentSnapshot:
        return PaymentSnapshot(
            total=self.compute_expected_total(),
            status=int(self.order.status),
            down_payment_paid=bool(self.order.down_payment_paid),
            balance_paid=bool(self.order.balance_paid),
        )

    def classify(self, paid: Decimal, bands: ToleranceBands = DEFAULT_BANDS) -> Classification:
        return classify_service_payment(self.snapshot(), paid, bands)

    def _apply_credit(self, classification: Classification):
        if self.order.payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            self.order.payment_status = PaymentStatus.RECEIVED.value

        if classification == Classification.FULL:
            self.order.down_payment_paid = True
            self.order.balance_paid = True
            self._advance_to(ServiceOrderStatus.PENDING_FINAL_VERIFICATION)
        elif classification == Classification.REMAINING_BALANCE:
            self.order.balance_paid = True
            self._advance_to(ServiceOrderStatus.PENDING_FINAL_VERIFICATION)
        else:
            # down payment; the admin moves the order into production
            self.order.down_payment_paid = True


_VARIANTS = {
    OrderKind.PRODUCT.value: ProductOrder,
    OrderKind.SERVICE.value: ServiceOrder,
}


def order_variant(order: Orders, items: Optional[List[OrderItem]] = None) -> PurchasableOrder:
    return _VARIANTS[order.kind](order, items)
