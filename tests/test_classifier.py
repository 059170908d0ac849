from decimal import Decimal
import pytest
from backend.payments.classifier import (
    Classification, PaymentSnapshot, ToleranceBands, classify_product_payment, classify_service_payment, is_credited,
)
from backend.schema.full_schema import ServiceOrderStatus

BANDS = ToleranceBands(full_fraction=Decimal("0.05"), downpayment_fraction=Decimal("0.10"), floor=Decimal("1.00"))
TOTAL = Decimal("1232.00")


def snap(status=ServiceOrderStatus.QUOTE_SENT, dp=False, bal=False, total=TOTAL):
    return PaymentSnapshot(total=total, status=int(status), down_payment_paid=dp, balance_paid=bal)


def test_tolerances_scale_with_total_and_respect_floor():
    assert BANDS.full_tolerance(TOTAL) == Decimal("61.60")
    assert BANDS.downpayment_tolerance(TOTAL) == Decimal("123.20")
    assert BANDS.full_tolerance(Decimal("10")) == Decimal("1.00")


@pytest.mark.parametrize("paid", ["1232", "1232.00", "1180", "1293.60"])
def test_full_payment_within_band(paid):
    assert classify_service_payment(snap(), Decimal(paid), BANDS) == Classification.FULL


def test_full_takes_precedence_over_balance_state():
    s = snap(ServiceOrderStatus.PENDING_BALANCE, dp=True)
    assert classify_service_payment(s, TOTAL, BANDS) == Classification.FULL


def test_remaining_balance_needs_pending_balance_and_down_payment():
    s = snap(ServiceOrderStatus.PENDING_BALANCE, dp=True)
    assert classify_service_payment(s, Decimal("616"), BANDS) == Classification.REMAINING_BALANCE
    # out of sequence: balance state without a recorded down payment
    s = snap(ServiceOrderStatus.PENDING_BALANCE, dp=False)
    assert classify_service_payment(s, Decimal("300"), BANDS) == Classification.UNCLASSIFIABLE


@pytest.mark.parametrize("paid", ["616", "500", "739.20"])
def test_down_payment_half_within_band(paid):
    assert classify_service_payment(snap(), Decimal(paid), BANDS) == Classification.DOWNPAYMENT


def test_down_payment_by_status_when_amount_does_not_match():
    s = snap(ServiceOrderStatus.PENDING_DOWNPAYMENT)
    assert classify_service_payment(s, Decimal("200"), BANDS) == Classification.DOWNPAYMENT_BY_STATUS


def test_second_down_payment_is_unclassifiable():
    s = snap(ServiceOrderStatus.PENDING_DOWNPAYMENT, dp=True)
    assert classify_service_payment(s, Decimal("616"), BANDS) == Classification.UNCLASSIFIABLE


def test_product_orders_only_accept_full_payment():
    assert classify_product_payment(TOTAL, Decimal("1232"), BANDS) == Classification.FULL
    assert classify_product_payment(TOTAL, Decimal("616"), BANDS) == Classification.UNCLASSIFIABLE


def test_credited_set():
    assert is_credited(Classification.DOWNPAYMENT_BY_STATUS)
    assert not is_credited(Classification.UNCLASSIFIABLE)
    assert not is_credited(None)
