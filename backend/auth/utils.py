from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import secrets
from typing import Iterable, Optional
from jose import jwt, JWTError
from backend.config.settings import config_settings

JWT_SECRET = config_settings.JWT_SECRET
JWT_ALGO = config_settings.JWT_ALGO

ACCESS_TOKEN_EXPIRE_MINUTES = 30


def create_access_token(user_id, user_roles: Iterable[str] = (), expires_dur: int = ACCESS_TOKEN_EXPIRE_MINUTES):
    now = datetime.now(timezone.utc)
    expiry = now + timedelta(minutes=expires_dur)

    payload = {
        "sub": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int(expiry.timestamp()),
        "jti": secrets.token_hex(16),
        "roles": list(user_roles),
    }
    return jwt.encode(claims=payload, key=JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> Optional[dict]:
    """To verify the signature , expiration and user claims of token"""
    try:
        return jwt.decode(token, key=JWT_SECRET, algorithms=[JWT_ALGO])
    except JWTError:
        return None


def hash_code(plain: str) -> str:
    return hashlib.sha256(plain.encode()).hexdigest()


def codes_match(plain: str, stored_hash: str) -> bool:
    return hmac.compare_digest(hash_code(plain), stored_hash)


def generate_numeric_code(digits: int = 6) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(digits))
