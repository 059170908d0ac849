from backend.common.logging_setup import get_logger

logger = get_logger("fundamental.payments")

PROVIDER = "paymongo"

# webhook event types acted upon; anything else is acknowledged and ignored
PAID_EVENT_TYPES = ("checkout_session.payment.paid", "payment.paid")
FAILED_EVENT_TYPES = ("checkout_session.payment.failed", "payment.failed")

GATEWAY_PAID_STATUS = "paid"

DEFAULT_BACKOFF_BASE = 0.5
MAX_BACKOFF = 4.0

# outbox topics emitted after a credited payment
TOPIC_CART_PRUNE = "order.cart_prune"
TOPIC_VOUCHER_CONSUME = "order.voucher_consume"
TOPIC_RECEIPT = "order.receipt"
TOPIC_NOTIFY = "order.notify"
