from backend.common.logging_setup import get_logger

logger = get_logger("fundamental.auth")

ADMIN_ROLE = "admin"

VERIFICATION_CODE_KEY_PREFIX = "verification_code"
