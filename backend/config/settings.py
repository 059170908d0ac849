from decimal import Decimal
from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):

    DATABASE_URL : str
    JWT_SECRET :str
    JWT_ALGO : str = "HS256"

    PAYMONGO_SECRET_KEY : str = ""
    PAYMONGO_API_URL : str = "https://api.paymongo.com/v1"
    PAYMONGO_WEBHOOK_SECRET : Optional[str] = None
    PAYMONGO_WEBHOOK_PATH : str = "/api/v1/payments/webhook"
    WEBHOOK_SIGNATURE_HEADER : str = "X-Paymongo-Signature"
    PAYMENT_METHOD_TYPES : str = "card,gcash,grab_pay,paymaya"
    GATEWAY_TIMEOUT_SECONDS : float = 10.0
    GATEWAY_MAX_RETRIES : int = 3

    CURRENCY : str = "PHP"
    VAT_PERCENT : Decimal = Decimal("12")
    DELIVERY_FEE : Decimal = Decimal("100")
    FULL_PAYMENT_TOLERANCE : Decimal = Decimal("0.05")
    DOWNPAYMENT_TOLERANCE : Decimal = Decimal("0.10")
    TOLERANCE_FLOOR : Decimal = Decimal("1.00")

    LOW_STOCK_THRESHOLD : int = 10
    CHECKOUT_HOLD_INVENTORY : bool = False

    SIDE_EFFECT_WORKERS : int = 2
    OUTBOX_POLL_SECONDS : float = 2.0

    SERVER_URL : str = "http://localhost:8000"

    REDIS_HOST : str = "localhost"
    REDIS_PORT : int = 6379
    REDIS_DB : int = 0
    VERIFICATION_CODE_TTL_SECONDS : int = 600

    class Config:
        env_file = ".env"
        extra="ignore"

config_settings = Settings()
