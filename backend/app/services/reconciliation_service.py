"""Reconciliation service - applies a gateway result to a payment attempt exactly once

Both the callback path and the confirm-by-transaction-id path end here (or in
``grant_subscription``). Correctness under redelivery and concurrent callbacks
comes from the database: a compare-and-swap on ``status = 'pending'`` and the
partial unique index on completed gateway transaction ids.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import SUBSCRIPTION_PERIOD_DAYS
from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.core.metrics import reconciliation_outcomes_counter
from app.models.payment_transaction import (
    PaymentTransaction, STATUS_PENDING, STATUS_COMPLETED, STATUS_FAILED
)
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.payments import CallbackPayload
from app.services.auth_service import get_user_by_id, get_or_create_role_profile

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_ALREADY_PROCESSED = "already_processed"

DEFAULT_FAILURE_MESSAGE = "Payment failed"


@dataclass
class ReconciliationOutcome:
    status: str
    payment_transaction_id: str
    subscription_id: Optional[str] = None
    mmg_transaction_id: Optional[str] = None
    message: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None

    @property
    def is_success(self) -> bool:
        """Completed now or by an earlier delivery"""
        return self.status in (OUTCOME_COMPLETED, OUTCOME_ALREADY_PROCESSED)


def subscription_window(now: Optional[datetime] = None):
    """(start, end) of a subscription granted at ``now``"""
    start = now or datetime.now(timezone.utc)
    return start, start + timedelta(days=SUBSCRIPTION_PERIOD_DAYS)


def grant_subscription(
    user: User,
    amount: Decimal,
    currency: str,
    mmg_transaction_id: Optional[str],
    db: Session,
    subscription_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Insert an active monthly subscription and activate the role profile

    Does not commit; the caller commits together with the payment row so the
    grant is all-or-nothing.
    """
    start_date, end_date = subscription_window(now)

    subscription = Subscription(
        id=subscription_id or str(uuid.uuid4()),
        user_id=user.id,
        user_role=user.role,
        plan_type="monthly",
        amount=amount,
        currency=currency,
        start_date=start_date,
        end_date=end_date,
        status="active",
        payment_method="mmg",
        payment_reference=mmg_transaction_id,
        payment_date=start_date,
    )
    db.add(subscription)

    profile = get_or_create_role_profile(user, db)
    if profile is not None:
        profile.subscription_status = "active"
        profile.subscription_start_date = start_date
        profile.subscription_end_date = end_date
        profile.updated_at = start_date
    else:
        logger.warning(f"User {user.id} has role {user.role!r} with no subscription profile")

    return subscription


def _outcome_for_terminal(txn: PaymentTransaction) -> Optional[ReconciliationOutcome]:
    """Outcome for a row that is no longer pending, None while it still is"""
    if txn.status == STATUS_COMPLETED:
        return ReconciliationOutcome(
            status=OUTCOME_ALREADY_PROCESSED,
            payment_transaction_id=txn.id,
            subscription_id=txn.subscription_id,
            mmg_transaction_id=txn.mmg_transaction_id,
            message="Payment already processed",
            amount=txn.amount,
            currency=txn.currency,
        )
    if txn.status == STATUS_FAILED:
        return ReconciliationOutcome(
            status=OUTCOME_FAILED,
            payment_transaction_id=txn.id,
            mmg_transaction_id=txn.mmg_transaction_id,
            message=txn.error_message or DEFAULT_FAILURE_MESSAGE,
            amount=txn.amount,
            currency=txn.currency,
        )
    return None


def _completed_holder(db: Session, mmg_transaction_id: Optional[str], exclude_id: str) -> Optional[PaymentTransaction]:
    """The other completed payment that already owns a gateway transaction id"""
    if not mmg_transaction_id:
        return None
    return db.query(PaymentTransaction).filter(
        PaymentTransaction.mmg_transaction_id == mmg_transaction_id,
        PaymentTransaction.status == STATUS_COMPLETED,
        PaymentTransaction.id != exclude_id
    ).first()


def _duplicate_outcome(txn: PaymentTransaction, holder: PaymentTransaction) -> ReconciliationOutcome:
    return ReconciliationOutcome(
        status=OUTCOME_ALREADY_PROCESSED,
        payment_transaction_id=txn.id,
        subscription_id=holder.subscription_id,
        mmg_transaction_id=holder.mmg_transaction_id,
        message=f"Payment already processed as {holder.id}",
        amount=txn.amount,
        currency=txn.currency,
    )


def _close_as_duplicate(db: Session, txn: PaymentTransaction, holder: PaymentTransaction, payload: CallbackPayload) -> ReconciliationOutcome:
    """Retire a pending attempt whose gateway transaction completed another payment of the same user.

    Happens when the app confirms by transaction id before the gateway callback lands.
    """
    updated = db.query(PaymentTransaction).filter(
        PaymentTransaction.id == txn.id,
        PaymentTransaction.status == STATUS_PENDING
    ).update({
        PaymentTransaction.status: STATUS_FAILED,
        PaymentTransaction.mmg_transaction_id: payload.transaction_id,
        PaymentTransaction.gateway_response: payload.raw,
        PaymentTransaction.error_message: f"Duplicate of payment {holder.id}",
    }, synchronize_session=False)

    if updated == 0:
        db.rollback()
        current = _refetch(db, txn.id)
        if current.status == STATUS_COMPLETED:
            return _outcome_for_terminal(current)
    else:
        db.commit()
        logger.info(f"Payment {txn.id} closed as duplicate of {holder.id} (transaction {payload.transaction_id})")

    return _duplicate_outcome(txn, holder)


def _refetch(db: Session, payment_transaction_id: str) -> Optional[PaymentTransaction]:
    db.expire_all()
    return db.query(PaymentTransaction).filter(PaymentTransaction.id == payment_transaction_id).first()


def _record(source: str, outcome: ReconciliationOutcome) -> ReconciliationOutcome:
    reconciliation_outcomes_counter.labels(source=source, outcome=outcome.status).inc()
    return outcome


def _mark_failed(db: Session, txn: PaymentTransaction, payload: CallbackPayload, source: str) -> ReconciliationOutcome:
    message = payload.result_message or DEFAULT_FAILURE_MESSAGE
    updated = db.query(PaymentTransaction).filter(
        PaymentTransaction.id == txn.id,
        PaymentTransaction.status == STATUS_PENDING
    ).update({
        PaymentTransaction.status: STATUS_FAILED,
        PaymentTransaction.mmg_transaction_id: payload.transaction_id,
        PaymentTransaction.gateway_response: payload.raw,
        PaymentTransaction.error_message: message,
    }, synchronize_session=False)

    if updated == 0:
        db.rollback()
        current = _refetch(db, txn.id)
        logger.info(f"Payment {txn.id} left pending before failure could be recorded (now {current.status})")
        return _record(source, _outcome_for_terminal(current))

    db.commit()
    logger.warning(f"Payment {txn.id} failed (code {payload.result_code}): {message}")
    return _record(source, ReconciliationOutcome(
        status=OUTCOME_FAILED,
        payment_transaction_id=txn.id,
        mmg_transaction_id=payload.transaction_id,
        message=message,
        amount=txn.amount,
        currency=txn.currency,
    ))


def _mark_completed(db: Session, txn: PaymentTransaction, payload: CallbackPayload, source: str) -> ReconciliationOutcome:
    user = get_user_by_id(txn.user_id, db=db)
    if not user:
        raise NotFoundError("User not found")
    if not user.role:
        raise ValidationError("User role not set")

    subscription_id = str(uuid.uuid4())
    now = datetime.now(timezone.utc)

    try:
        # Subscription row first so the payment's foreign key resolves at update time
        grant_subscription(
            user, txn.amount, txn.currency, payload.transaction_id, db,
            subscription_id=subscription_id, now=now
        )
        db.flush()

        updated = db.query(PaymentTransaction).filter(
            PaymentTransaction.id == txn.id,
            PaymentTransaction.status == STATUS_PENDING
        ).update({
            PaymentTransaction.status: STATUS_COMPLETED,
            PaymentTransaction.subscription_id: subscription_id,
            PaymentTransaction.mmg_transaction_id: payload.transaction_id,
            PaymentTransaction.mmg_reference: payload.transaction_id,
            PaymentTransaction.completed_at: now,
            PaymentTransaction.gateway_response: payload.raw,
        }, synchronize_session=False)

        if updated == 0:
            # Lost the race to another delivery
            db.rollback()
            current = _refetch(db, txn.id)
            return _record(source, _outcome_for_terminal(current))

        db.commit()
    except IntegrityError as e:
        db.rollback()
        current = _refetch(db, txn.id)
        if current is not None and current.status == STATUS_COMPLETED:
            return _record(source, _outcome_for_terminal(current))
        holder = _completed_holder(db, payload.transaction_id, exclude_id=txn.id)
        if holder is None:
            logger.error(f"Integrity error completing payment {txn.id}: {e.orig}")
            raise
        if holder.user_id == txn.user_id:
            return _record(source, _close_as_duplicate(db, txn, holder, payload))
        logger.error(f"Gateway transaction {payload.transaction_id} already completed payment {holder.id} of another user")
        reconciliation_outcomes_counter.labels(source=source, outcome="conflict").inc()
        raise ConflictError("Transaction already used by another payment")
    except Exception:
        db.rollback()
        raise

    logger.info(f"✅ Payment {txn.id} completed, subscription {subscription_id} active until {now + timedelta(days=SUBSCRIPTION_PERIOD_DAYS)}")
    return _record(source, ReconciliationOutcome(
        status=OUTCOME_COMPLETED,
        payment_transaction_id=txn.id,
        subscription_id=subscription_id,
        mmg_transaction_id=payload.transaction_id,
        message="Payment completed",
        amount=txn.amount,
        currency=txn.currency,
    ))


def reconcile(
    db: Session,
    merchant_transaction_id: str,
    payload: CallbackPayload,
    source: str = "callback",
) -> ReconciliationOutcome:
    """Apply a gateway result to the payment attempt it names

    Args:
        db: Database session
        merchant_transaction_id: Our PaymentTransaction id, echoed by the gateway
        payload: Decrypted gateway result
        source: Metrics label for the caller

    Returns:
        ReconciliationOutcome; redelivery of a completed payment yields
        ``already_processed`` without writing anything, as does a
        transaction the same user already confirmed by id

    Raises:
        NotFoundError: Unknown payment attempt or owner
        ConflictError: The gateway transaction already completed another user's payment
    """
    txn = db.query(PaymentTransaction).filter(PaymentTransaction.id == merchant_transaction_id).first()
    if not txn:
        logger.warning(f"Callback for unknown payment transaction {merchant_transaction_id}")
        raise NotFoundError("Payment transaction not found")

    if txn.status == STATUS_COMPLETED:
        logger.info(f"Payment {txn.id} already completed, ignoring redelivery")
        return _record(source, _outcome_for_terminal(txn))

    if not payload.is_success:
        return _mark_failed(db, txn, payload, source)

    if txn.status == STATUS_FAILED:
        # Terminal: a late success never resurrects a failed attempt
        if txn.mmg_transaction_id == payload.transaction_id:
            holder = _completed_holder(db, payload.transaction_id, exclude_id=txn.id)
            if holder is not None and holder.user_id == txn.user_id:
                return _record(source, _duplicate_outcome(txn, holder))
        logger.warning(f"Success result for already failed payment {txn.id}, leaving it failed")
        return _record(source, _outcome_for_terminal(txn))

    return _mark_completed(db, txn, payload, source)


def get_payment_status(payment_transaction_id: str, user_id: str, db: Session) -> Dict[str, Any]:
    """Status of a payment attempt, visible to its owner only

    Raises:
        NotFoundError: Unknown id or owned by another user
    """
    txn = db.query(PaymentTransaction).filter(
        PaymentTransaction.id == payment_transaction_id,
        PaymentTransaction.user_id == user_id
    ).first()
    if not txn:
        raise NotFoundError("Payment transaction not found")

    return {
        "paymentTransactionId": txn.id,
        "status": txn.status,
        "subscriptionId": txn.subscription_id,
        "amount": float(txn.amount),
        "currency": txn.currency,
        "errorMessage": txn.error_message,
    }
