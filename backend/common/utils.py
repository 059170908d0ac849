from datetime import datetime,timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Union

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

CENT = Decimal("0.01")

def now() -> datetime:
    return datetime.now(timezone.utc)


def money(value: Union[Decimal, int, float, str, None]) -> Decimal:
    """Decimal rounded to centavos. Floats go through str() to avoid binary noise."""
    if value is None:
        return Decimal("0.00")
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_centavos(amount: Decimal) -> int:
    return int((money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_centavos(amount: Union[int, str, None]) -> Decimal:
    """Gateway amounts are whole centavos; anything else is a malformed payload (ValueError)."""
    if amount is None:
        return Decimal("0.00")
    if isinstance(amount, bool) or not isinstance(amount, (int, str)):
        raise ValueError(f"amount must be an integer number of centavos, got {amount!r}")
    if isinstance(amount, str) and not amount.strip().isdigit():
        raise ValueError(f"amount must be an integer number of centavos, got {amount!r}")
    centavos = int(amount)
    if centavos < 0:
        raise ValueError(f"amount must not be negative, got {amount!r}")
    return money(Decimal(centavos) / 100)


def build_success(data: Any,
                  trace_id: Optional[str] = None,request_id: Optional[str] = None,) -> Dict[str, Any]:
    return {
        "status": "ok",
        "data": jsonable_encoder(data, custom_encoder={Decimal: str}),
        "error": None,
        "trace_id": trace_id,
        "request_id": request_id,
    }

def build_error(code: Union[str, int] = "UNKNOWN_ERROR",
                details: Optional[Any] = None,
                request_id: Optional[str] = None,
                trace_id: Optional[str] = None) -> Dict[str, Any]:

    return {
        "status": "error",
        "data": None,
        "error": {"code": code, "details": jsonable_encoder(details, custom_encoder={Decimal: str})},
        "trace_id": trace_id,
        "request_id": request_id,
    }

def json_ok(content: Dict[str, Any], status_code: int = 200,headers = None) -> JSONResponse:
    return JSONResponse(content, status_code=status_code,headers=headers)

def json_error(content: Dict[str, Any], status_code: int = 500, headers=None) -> JSONResponse:
    return JSONResponse(content, status_code=status_code, headers=headers)

def success_response(data: Any, status_code: int = 200,headers: Optional[Dict[str, Any]] = None ,
                     trace_id: Optional[str] = None , request_id: Optional[str] = None) -> JSONResponse:
    content = build_success(data, request_id=request_id, trace_id=trace_id)
    return json_ok(content, status_code=status_code,headers=headers)
