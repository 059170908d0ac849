from typing import Any, Dict, Optional
import orjson
from fastapi import Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from backend.common.constants import request_id_ctx
from backend.common.errors import DuplicateEvent, SignatureVerificationFailed, TransactionAbortError
from backend.common.retries import retry_with_db_circuit
from backend.common.utils import build_error, json_error, success_response
from backend.config.settings import config_settings
from backend.db.dependencies import get_session
from backend.orders.repository import find_order_for_session
from backend.payments import gateway, ledger
from backend.payments.constants import FAILED_EVENT_TYPES, PAID_EVENT_TYPES, logger
from backend.payments.pipeline import ReconcileOutcome, publish_side_effects, reconcile_failure, reconcile_payment


async def handle_event(session, event_id: int, payload: Dict[str, Any], event_type: Optional[str],
                       verified: bool) -> Optional[ReconcileOutcome]:
    """Business processing of one persisted event; marks it processed in the same transaction.

    Unverified events are processed but always land in the review queue.
    """
    extra_result = {} if verified else {"signature": "unverified"}
    review = not verified

    if event_type not in PAID_EVENT_TYPES + FAILED_EVENT_TYPES:
        await ledger.mark_processed(session, event_id, {"note": "ignored", "event_type": event_type, **extra_result},
                                    needs_review=review)
        return None

    resource = gateway.event_resource(payload)
    ids = gateway.correlation_ids(resource)
    order = await find_order_for_session(session, ids["session_id"], ids["reference"])
    if order is None:
        logger.warning("paymongo_webhook.order_not_found", extra={"event_id": event_id, **ids})
        await ledger.mark_processed(session, event_id, {"note": "order not found", **ids, **extra_result},
                                    needs_review=True)
        return None

    session_id = ids["session_id"] or order.payment_session_id

    if event_type in FAILED_EVENT_TYPES:
        outcome = await reconcile_failure(session, order_id=order.id, provider_session_id=session_id)
    else:
        try:
            if resource.get("type") == "payment":
                paid = gateway.single_payment_amount(resource)
                provider_payment_id = resource.get("id")
            else:
                paid = gateway.paid_amount(resource)
                provider_payment_id = gateway.first_paid_payment_id(resource)
        except ValueError as exc:
            logger.warning("paymongo_webhook.malformed_amount", extra={"event_id": event_id, "error": str(exc)})
            await ledger.mark_processed(session, event_id, {"note": "malformed amount", "error": str(exc),
                                                            **extra_result},
                                        order_id=order.id, needs_review=True)
            return None

        if paid <= 0 or not session_id:
            await ledger.mark_processed(session, event_id, {"note": "no paid amount", **extra_result},
                                        order_id=order.id, needs_review=True)
            return None

        outcome = await reconcile_payment(
            session, order_id=order.id, provider_session_id=session_id, paid=paid,
            provider_payment_id=provider_payment_id, source="webhook")

    await ledger.mark_processed(session, event_id, {**outcome.as_result(), **extra_result}, order_id=order.id,
                                needs_review=review or None)
    return outcome


@retry_with_db_circuit()
async def _process_with_retry(session, event_id: int, payload: Dict[str, Any], event_type: Optional[str],
                              verified: bool) -> Optional[ReconcileOutcome]:
    try:
        outcome = await handle_event(session, event_id, payload, event_type, verified)
        await session.commit()
        return outcome
    except Exception:
        await session.rollback()
        raise


async def paymongo_webhook(request: Request, session: AsyncSession = Depends(get_session)):
    raw = await request.body()
    raw_text = raw.decode("utf-8", errors="replace")
    secret = config_settings.PAYMONGO_WEBHOOK_SECRET
    signature = request.headers.get(config_settings.WEBHOOK_SIGNATURE_HEADER)
    rid = request_id_ctx.get(None)

    try:
        payload = orjson.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("webhook body must be a json object")
    except ValueError as exc:
        # orjson.JSONDecodeError subclasses ValueError
        await ledger.record_webhook_receipt(
            session, external_id=None, event_type=None, raw_body=raw_text, payload=None, signature=signature,
            verified=False, needs_review=True, last_error=f"unparseable body: {exc}")
        await session.commit()
        logger.warning("paymongo_webhook.unparseable_body", extra={"size": len(raw)})
        return json_error(build_error(code="UNPARSEABLE_BODY", details={"message": "invalid json body"}, request_id=rid),
                          status_code=status.HTTP_400_BAD_REQUEST)

    external_id = gateway.event_id(payload)
    event_type = gateway.event_type(payload)

    if secret:
        verified = gateway.verify_signature(raw, signature, secret)
    else:
        verified = False
        logger.warning("paymongo_webhook.secret_missing", extra={"event_id": external_id})

    event = await ledger.record_webhook_receipt(
        session, external_id=external_id, event_type=event_type, raw_body=raw_text, payload=payload,
        signature=signature, verified=verified,
        last_error=None if external_id else "missing event id")

    if secret and not verified:
        await ledger.mark_needs_review(session, event.id, "invalid signature")
        await session.commit()
        logger.warning("paymongo_webhook.invalid_signature", extra={"event_id": external_id})
        raise SignatureVerificationFailed("invalid signature", event_id=external_id)

    if not external_id:
        # persisted for audit; nothing to dedupe on, so it is never processed
        await ledger.mark_needs_review(session, event.id, "missing event id")
        await session.commit()
        logger.warning("paymongo_webhook.missing_event_id", extra={"event_type": event_type})
        return success_response({"note": "missing event id", "event_id": None}, request_id=rid)

    try:
        await ledger.ensure_unprocessed(session, external_id)
    except DuplicateEvent:
        await session.commit()
        logger.info("paymongo_webhook.duplicate", extra={"event_id": external_id, "attempts": event.attempts})
        return success_response({"note": "duplicate", "event_id": external_id}, request_id=rid)

    event_row_id = event.id
    # the receipt survives even if processing fails below
    await session.commit()

    try:
        outcome = await _process_with_retry(session, event_row_id, payload, event_type, verified)
    except Exception as exc:
        try:
            await ledger.record_error(session, event_row_id, f"{type(exc).__name__}: {exc}")
            await session.commit()
        except Exception as rec_err:
            logger.error("paymongo_webhook.record_error_failure", extra={"event_id": external_id},
                         exc_info=(type(rec_err), rec_err, rec_err.__traceback__))
        if isinstance(exc, TransactionAbortError):
            logger.error("paymongo_webhook.aborted", extra={"event_id": external_id})
        raise

    note = "processed"
    if outcome is not None:
        publish_side_effects(request.app, outcome)
        note = outcome.note

    return success_response({"note": note, "event_id": external_id,
                             "result": outcome.as_result() if outcome else None}, request_id=rid)
