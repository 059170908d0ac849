from backend.common.logging_setup import get_logger

logger = get_logger("fundamental.inventory")

# labels are free form ("XS", "M", "32") but bounded by the column width
MAX_SIZE_LABEL_LEN = 16
