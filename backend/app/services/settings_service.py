"""Settings service - system-wide configuration such as subscription prices"""
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session

from app.core.config import SUBSCRIPTION_PRICES_KEY
from app.models.system_setting import SystemSetting

logger = logging.getLogger(__name__)


def get_system_setting(key: str, db: Session) -> Optional[Any]:
    """Get a system setting by key, JSON-decoded when possible"""
    setting = db.query(SystemSetting).filter(SystemSetting.key == key).first()
    if not setting:
        return None
    try:
        return json.loads(setting.value)
    except (json.JSONDecodeError, TypeError):
        # Legacy plain-text values
        return setting.value


def set_system_setting(key: str, value: Any, db: Session, description: Optional[str] = None) -> SystemSetting:
    """Create or update a system setting (value stored as JSON)"""
    setting = db.query(SystemSetting).filter(SystemSetting.key == key).first()
    if not setting:
        setting = SystemSetting(key=key, value=json.dumps(value), description=description)
        db.add(setting)
    else:
        setting.value = json.dumps(value)
        if description is not None:
            setting.description = description
    db.commit()
    db.refresh(setting)
    return setting


def get_subscription_prices(db: Session) -> Dict[str, Any]:
    """Configured price table, plan tag -> amount. Empty dict when not configured."""
    prices = get_system_setting(SUBSCRIPTION_PRICES_KEY, db)
    if not isinstance(prices, dict):
        if prices is not None:
            logger.error(f"System setting {SUBSCRIPTION_PRICES_KEY} is not an object: {prices!r}")
        return {}
    return prices


def get_subscription_price(subscription_type: str, db: Session) -> Optional[Decimal]:
    """Expected amount for a plan tag, or None if missing or not a positive number"""
    raw = get_subscription_prices(db).get(subscription_type)
    if raw is None or isinstance(raw, bool):
        return None
    try:
        price = Decimal(str(raw))
    except InvalidOperation:
        logger.error(f"Invalid configured price for {subscription_type}: {raw!r}")
        return None
    if not price.is_finite() or price <= 0:
        return None
    return price
