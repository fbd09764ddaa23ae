"""Callback service - MMG redirect callbacks carrying an encrypted result token"""
import logging
from typing import Optional
from urllib.parse import urlencode
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logging import mmg_logger
from app.core.errors import AppError, ConfigurationError, ConflictError, NotFoundError, ValidationError
from app.core.metrics import reconciliation_outcomes_counter, webhook_log_failures_counter
from app.models.webhook_log import WebhookLog
from app.schemas.payments import CallbackPayload
from app.services.reconciliation_service import reconcile
from app.utils.encryption import DecodeError, EncryptionConfigError, decrypt

logger = logging.getLogger(__name__)


def parse_callback_token(token: Optional[str]) -> CallbackPayload:
    """Decrypt and validate a callback token

    Raises:
        ValidationError: Missing or undecryptable token, or no merchantTransactionId
        ConfigurationError: Private key missing or unreadable
    """
    if not token:
        raise ValidationError("Missing token")

    try:
        data = decrypt(token)
    except EncryptionConfigError as e:
        logger.error(f"Cannot decrypt MMG callback: {e}")
        raise ConfigurationError("Payment gateway not configured")
    except DecodeError as e:
        mmg_logger.warning(f"Rejected undecryptable MMG callback token: {e}")
        raise ValidationError("Invalid token", details=str(e))

    if not isinstance(data, dict):
        raise ValidationError("Invalid token", details="Decrypted payload is not an object")

    payload = CallbackPayload.from_decrypted(data)
    if not payload.merchant_transaction_id:
        raise ValidationError("Missing merchantTransactionId")
    return payload


def log_webhook(payload: CallbackPayload, db: Session) -> None:
    """Append the callback to mmg_webhook_logs. Failures are logged and counted, never raised."""
    try:
        db.add(WebhookLog(
            merchant_transaction_id=payload.merchant_transaction_id,
            transaction_id=payload.transaction_id,
            result_code=payload.result_code,
            result_message=payload.result_message,
            html_response=payload.html_response,
            raw_body=payload.raw,
        ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        webhook_log_failures_counter.inc()
        logger.warning(f"Failed to write webhook log for {payload.merchant_transaction_id}: {e}")


def success_redirect_url(transaction_id: Optional[str], payment_id: str) -> str:
    query = urlencode({"transactionId": transaction_id or "", "paymentId": payment_id})
    return f"{settings.payment_success_url}?{query}"


def failure_redirect_url(transaction_id: Optional[str], payment_id: str, reason: str) -> str:
    query = urlencode({"transactionId": transaction_id or "", "paymentId": payment_id, "reason": reason})
    return f"{settings.payment_failure_url}?{query}"


def handle_callback(token: Optional[str], db: Session) -> str:
    """Reconcile a gateway callback and return the page to redirect the user-agent to

    Only malformed tokens (and missing key material) raise; every outcome of
    reconciliation, including errors, maps to the success or failure page.
    """
    payload = parse_callback_token(token)
    payment_id = payload.merchant_transaction_id
    mmg_logger.info(
        f"MMG callback for payment {payment_id}: transaction {payload.transaction_id}, "
        f"result {payload.result_code} {payload.result_message or ''}".rstrip()
    )

    log_webhook(payload, db)

    try:
        outcome = reconcile(db, payment_id, payload, source="callback")
    except NotFoundError:
        return failure_redirect_url(payload.transaction_id, payment_id, "Payment transaction not found")
    except ConflictError:
        return failure_redirect_url(payload.transaction_id, payment_id, "Transaction already used by another payment")
    except AppError as e:
        logger.error(f"Callback reconciliation for {payment_id} rejected: {e.message}")
        return failure_redirect_url(payload.transaction_id, payment_id, e.message)
    except Exception as e:
        logger.error(f"Callback reconciliation for {payment_id} failed: {e}", exc_info=True)
        reconciliation_outcomes_counter.labels(source="callback", outcome="error").inc()
        return failure_redirect_url(payload.transaction_id, payment_id, "Payment processing error")

    if outcome.is_success:
        return success_redirect_url(payload.transaction_id, payment_id)
    return failure_redirect_url(payload.transaction_id, payment_id, outcome.message or "Payment failed")
