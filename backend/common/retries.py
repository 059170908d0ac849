import asyncio
import functools
import random
from typing import Callable, Optional
from sqlalchemy.exc import DBAPIError,OperationalError
from backend.common import logger
from backend.common.circuit_breaker import CircuitBreaker, CircuitOpenError, db_circuit
from backend.common.errors import TransactionAbortError

# postgres: serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = ("40001", "40P01")

def is_recoverable_exception(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, (TimeoutError, ConnectionError, OperationalError)):
        return True
    if isinstance(exc, DBAPIError):
        # connection_invalidated is set when the connection dropped mid statement
        if getattr(exc, "connection_invalidated", False):
            return True
        orig = getattr(exc, "orig", None)
        if orig is not None:
            sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
            if sqlstate in RETRYABLE_SQLSTATES:
                return True
            name = type(orig).__name__.lower()
            if any(k in name for k in ("serialization", "deadlock", "timeout", "connection")):
                return True
            if "database is locked" in str(orig).lower():
                return True
    return False

async def _sleep_with_jitter(delay: float, jitter: float) -> None:
    jitter_val = random.uniform(-jitter * delay, jitter * delay)
    await asyncio.sleep(max(0.0, delay + jitter_val))


def retry_with_db_circuit(
    *,
    attempts: int = 3,
    base_delay: float = 0.1,
    factor: float = 2.0,
    max_delay: float = 1.0,
    jitter: float = 0.15,
    if_retryable: Optional[Callable[[BaseException], bool]] = None,
    per_attempt_timeout: Optional[float] = None,
    circuit: CircuitBreaker = db_circuit,
):
    """Retry an async unit of work on recoverable database errors.

    The wrapped coroutine must leave its session clean when it raises (roll back
    before re-raising) so that the next attempt starts a fresh transaction.
    Non recoverable errors propagate untouched; exhausted retries and an open
    circuit surface as TransactionAbortError.
    """
    if if_retryable is None:
        if_retryable = is_recoverable_exception

    def deco(fn: Callable):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, attempts + 1):

                try:
                    await circuit.before_call()
                except CircuitOpenError as exc:
                    raise TransactionAbortError("database unavailable", circuit=circuit.name) from exc

                acquired_probe = False
                if circuit.state == "HALF_OPEN":
                    acquired_probe = await circuit.acquire_half_open_probe(timeout=0.1)
                    if not acquired_probe:
                        raise TransactionAbortError("database unavailable", circuit=circuit.name)

                try:
                    if per_attempt_timeout:
                        result = await asyncio.wait_for(fn(*args,**kwargs), timeout=per_attempt_timeout)
                    else:
                        result = await fn(*args,**kwargs)
                    await circuit.record_success()
                    return result

                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    try:
                        retryable = if_retryable(exc)
                    except Exception:
                        retryable = False
                    if not retryable:
                        raise

                    await circuit.record_failure()
                    if attempt == attempts:
                        logger.error("db_retry.exhausted", extra={"attempts": attempts, "fn": fn.__name__}, exc_info=exc)
                        raise TransactionAbortError("transaction aborted after retries", attempts=attempts) from exc

                    delay = min(max_delay, base_delay * (factor ** (attempt - 1)))
                    logger.debug("db_retry.attempt_failed", extra={"attempt": attempt, "delay": delay, "error": str(exc)})
                    await _sleep_with_jitter(delay, jitter)
                finally:
                    if acquired_probe:
                        circuit.release_half_open_probe()

        return wrapper
    return deco
