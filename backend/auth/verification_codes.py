from typing import Optional, Protocol
from backend.auth.constants import VERIFICATION_CODE_KEY_PREFIX, logger
from backend.auth.utils import codes_match, hash_code
from backend.cache._cache import redis_client
from backend.config.settings import config_settings


class VerificationCodeStore(Protocol):
    async def issue(self, subject: str, code: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def consume(self, subject: str, code: str) -> bool: ...


class RedisVerificationCodeStore:
    """Short lived one-time codes (email/phone verification) kept in redis.

    Only a sha256 of the code is stored; expiry is the key TTL, and a code can be
    consumed once. A wrong code does not burn the stored one.
    """

    def __init__(self, client, ttl_seconds: int = config_settings.VERIFICATION_CODE_TTL_SECONDS,
                 prefix: str = VERIFICATION_CODE_KEY_PREFIX):
        self.client = client
        self.ttl_seconds = int(ttl_seconds)
        self.prefix = prefix

    def _key(self, subject: str) -> str:
        return f"{self.prefix}:{subject}"

    async def issue(self, subject: str, code: str, ttl_seconds: Optional[int] = None) -> None:
        ttl = int(ttl_seconds or self.ttl_seconds)
        await self.client.setex(self._key(subject), ttl, hash_code(code))
        logger.info("verification_code.issued", extra={"subject": subject, "ttl": ttl})

    async def consume(self, subject: str, code: str) -> bool:
        key = self._key(subject)
        stored = await self.client.get(key)
        if stored is None:
            logger.info("verification_code.missing_or_expired", extra={"subject": subject})
            return False
        if isinstance(stored, bytes):
            stored = stored.decode()
        if not codes_match(code, stored):
            logger.warning("verification_code.mismatch", extra={"subject": subject})
            return False
        # delete returns 0 when a concurrent consume already took it
        deleted = await self.client.delete(key)
        return bool(deleted)


def default_code_store() -> RedisVerificationCodeStore:
    return RedisVerificationCodeStore(redis_client)
