from backend.common.logging_setup import get_logger

logger = get_logger("fundamental.orders")

# last N hex chars of the order public id, shown to customers and sent as the gateway reference number
ORDER_REFERENCE_LEN = 8
