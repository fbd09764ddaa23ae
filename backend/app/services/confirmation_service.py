"""Confirmation service - client-initiated "I paid, here is the MMG transaction id" path"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings, SUBSCRIPTION_TYPES
from app.core.errors import (
    AmountMismatchError, ConfigurationError, ConflictError, ValidationError
)
from app.core.metrics import amount_mismatch_counter, reconciliation_outcomes_counter
from app.models.payment_transaction import PaymentTransaction, STATUS_COMPLETED
from app.models.user import User
from app.schemas.payments import LookupResult
from app.services.mmg_client import MMGClient, MMGError
from app.services.reconciliation_service import grant_subscription
from app.services.settings_service import get_subscription_price

logger = logging.getLogger(__name__)


def _completed_for(transaction_id: str, db: Session, user_id: Optional[str] = None, exclude_user_id: Optional[str] = None):
    query = db.query(PaymentTransaction).filter(
        PaymentTransaction.mmg_transaction_id == transaction_id,
        PaymentTransaction.status == STATUS_COMPLETED
    )
    if user_id is not None:
        query = query.filter(PaymentTransaction.user_id == user_id)
    if exclude_user_id is not None:
        query = query.filter(PaymentTransaction.user_id != exclude_user_id)
    return query.first()


def _already_processed(txn: PaymentTransaction) -> Dict:
    reconciliation_outcomes_counter.labels(source="confirmation", outcome="already_processed").inc()
    return {
        "success": True,
        "alreadyProcessed": True,
        "paymentTransactionId": txn.id,
        "subscriptionId": txn.subscription_id,
        "status": "completed",
    }


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    """Gateway amount as a Decimal, None when absent or unparsable"""
    if value is None:
        return None
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def parse_creation_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparsable MMG creationDate: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate_confirmation_request(user: User, transaction_id: Optional[str], subscription_type: Optional[str]) -> str:
    """Input and role checks done before touching the database or the gateway

    Returns:
        The stripped transaction id
    """
    transaction_id = (transaction_id or "").strip()
    if not transaction_id:
        raise ValidationError("transactionId is required and must be a non-empty string")
    if subscription_type not in SUBSCRIPTION_TYPES:
        raise ValidationError(
            f"subscriptionType is required and must be one of: {', '.join(SUBSCRIPTION_TYPES)}"
        )
    if not user.role:
        raise ValidationError("User profile incomplete. Role not set.")
    if user.role != SUBSCRIPTION_TYPES[subscription_type]:
        raise ValidationError("subscriptionType does not match your account role")
    return transaction_id


async def confirm_payment(
    user: User,
    transaction_id: Optional[str],
    subscription_type: Optional[str],
    db: Session,
    client: MMGClient,
) -> Dict:
    """Verify an MMG transaction with the gateway and activate the subscription

    No database transaction is held open across the gateway lookup; the
    completed payment, subscription and profile update are written together
    only after the lookup and amount check pass.

    Raises:
        ValidationError: Bad input, role mismatch, or lookup failed / not successful
        ConflictError: Transaction already completed for another user
        ConfigurationError: No valid price configured for the plan
        AmountMismatchError: Gateway amount differs from the configured price
    """
    transaction_id = validate_confirmation_request(user, transaction_id, subscription_type)

    if _completed_for(transaction_id, db, exclude_user_id=user.id):
        logger.warning(f"User {user.id} tried to confirm MMG transaction {transaction_id[:8]}... owned by another account")
        reconciliation_outcomes_counter.labels(source="confirmation", outcome="conflict").inc()
        raise ConflictError("Transaction already linked to another account")

    existing = _completed_for(transaction_id, db, user_id=user.id)
    if existing:
        logger.info(f"MMG transaction {transaction_id[:8]}... already confirmed as payment {existing.id}")
        return _already_processed(existing)

    expected_amount = get_subscription_price(subscription_type, db)
    if expected_amount is None:
        logger.error(f"Subscription pricing not configured for {subscription_type}")
        raise ConfigurationError("Subscription pricing is not configured for this plan")

    # Release the read transaction before the network call
    db.rollback()

    try:
        lookup: LookupResult = await client.lookup_transaction(transaction_id)
    except MMGError as e:
        logger.warning(f"MMG lookup for {transaction_id[:8]}... failed: {e}")
        reconciliation_outcomes_counter.labels(source="confirmation", outcome="lookup_failed").inc()
        raise ValidationError("Transaction not found or not successful", details=str(e))

    amount = parse_amount(lookup.amount)
    if amount is None or amount != expected_amount:
        logger.warning(
            f"Amount mismatch for MMG transaction {transaction_id[:8]}...: "
            f"got {lookup.amount!r}, expected {expected_amount} ({subscription_type})"
        )
        amount_mismatch_counter.labels(subscription_type=subscription_type).inc()
        raise AmountMismatchError("Payment amount does not match subscription price")

    currency = lookup.currency or settings.DEFAULT_CURRENCY
    now = datetime.now(timezone.utc)

    txn = PaymentTransaction(
        user_id=user.id,
        amount=expected_amount,
        currency=currency,
        payment_method="mmg",
        status=STATUS_COMPLETED,
        mmg_transaction_id=transaction_id,
        mmg_reference=lookup.transaction_reference or lookup.transaction_receipt or transaction_id,
        initiated_at=parse_creation_date(lookup.creation_date) or now,
        completed_at=now,
        gateway_response=lookup.raw,
    )

    try:
        db.add(txn)
        db.flush()
        subscription = grant_subscription(user, expected_amount, currency, transaction_id, db, now=now)
        txn.subscription_id = subscription.id
        db.commit()
    except IntegrityError as e:
        db.rollback()
        # Another request completed the same gateway transaction first
        existing = _completed_for(transaction_id, db, user_id=user.id)
        if existing:
            return _already_processed(existing)
        if _completed_for(transaction_id, db, exclude_user_id=user.id) is None:
            logger.error(f"Integrity error confirming MMG transaction {transaction_id[:8]}...: {e.orig}")
            raise
        reconciliation_outcomes_counter.labels(source="confirmation", outcome="conflict").inc()
        raise ConflictError("Transaction already linked to another account")
    except Exception:
        db.rollback()
        raise

    reconciliation_outcomes_counter.labels(source="confirmation", outcome="completed").inc()
    logger.info(f"✅ Confirmed MMG transaction {transaction_id[:8]}... as payment {txn.id}, subscription {subscription.id}")

    return {
        "success": True,
        "paymentTransactionId": txn.id,
        "subscriptionId": subscription.id,
        "amount": float(expected_amount),
        "currency": currency,
        "status": "completed",
    }
