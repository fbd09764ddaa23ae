"""Checkout service - creates a pending payment attempt and the hosted checkout URL"""
import logging
import time
from decimal import Decimal
from typing import Dict, Optional, Union
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ConfigurationError, ValidationError
from app.core.metrics import checkouts_counter
from app.models.payment_transaction import PaymentTransaction, STATUS_PENDING
from app.models.user import User
from app.services.mmg_client import MMGClient
from app.utils.encryption import encrypt, to_url_safe_token

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "Subscription Payment"


def json_amount(amount: Decimal) -> Union[int, float]:
    """Amount as a JSON number: integral values stay integers"""
    if amount == amount.to_integral_value():
        return int(amount)
    return float(amount)


def build_checkout_payload(payment_transaction_id: str, amount: Decimal, description: str, now: Optional[int] = None) -> Dict:
    """Parameters the gateway expects inside the encrypted checkout token"""
    merchant_mid = settings.MMG_MERCHANT_MID
    return {
        "secretKey": settings.MMG_SECRET_KEY,
        "amount": json_amount(amount),
        "merchantId": merchant_mid,
        "merchantTransactionId": payment_transaction_id,
        "productDescription": description,
        "requestInitiationTime": now if now is not None else int(time.time()),
        "merchantName": f"Ecommerce merchant {merchant_mid}",
    }


def _check_checkout_config():
    missing = [name for name, value in (
        ("MMG_PUBLIC_KEY", settings.MMG_PUBLIC_KEY),
        ("MMG_MERCHANT_MID", settings.MMG_MERCHANT_MID),
        ("MMG_CLIENT_ID", settings.MMG_CLIENT_ID),
        ("MMG_CHECKOUT_URL", settings.MMG_CHECKOUT_URL),
    ) if not value]
    if missing:
        logger.error(f"MMG checkout not configured, missing: {', '.join(missing)}")
        raise ConfigurationError("Payment gateway not configured")


def initiate_checkout(
    user: User,
    amount: Decimal,
    db: Session,
    client: MMGClient,
    currency: Optional[str] = None,
    description: Optional[str] = None,
) -> Dict:
    """Start an MMG hosted checkout for the user

    Every call creates a new pending PaymentTransaction whose id is the
    merchant transaction id the gateway echoes back in its callback.

    Returns:
        Dict with paymentTransactionId, redirectUrl, amount, currency and status

    Raises:
        ValidationError: Non-positive amount or user without a role
        ConfigurationError: Gateway keys or identifiers missing
    """
    if amount is None or not amount.is_finite() or amount <= 0:
        raise ValidationError("Invalid amount. Amount must be greater than 0")
    if not user.role:
        raise ValidationError("User profile incomplete. Role not set.")

    _check_checkout_config()

    currency = currency or settings.DEFAULT_CURRENCY
    description = description or DEFAULT_DESCRIPTION

    txn = PaymentTransaction(
        user_id=user.id,
        amount=amount,
        currency=currency,
        payment_method="mmg",
        status=STATUS_PENDING,
    )
    db.add(txn)
    db.commit()
    db.refresh(txn)
    logger.info(f"Created pending payment {txn.id} for user {user.id} ({amount} {currency})")

    payload = build_checkout_payload(txn.id, amount, description)
    redirect_url = client.build_checkout_url(to_url_safe_token(encrypt(payload)))
    checkouts_counter.inc()

    return {
        "success": True,
        "paymentTransactionId": txn.id,
        "redirectUrl": redirect_url,
        "amount": json_amount(amount),
        "currency": currency,
        "status": "PENDING",
    }
