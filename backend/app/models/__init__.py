"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.user import User
from app.models.profile import DriverProfile, RiderProfile
from app.models.subscription import Subscription
from app.models.payment_transaction import PaymentTransaction
from app.models.webhook_log import WebhookLog
from app.models.system_setting import SystemSetting

# Export all for convenience
__all__ = [
    "Base", "User", "DriverProfile", "RiderProfile", "Subscription",
    "PaymentTransaction", "WebhookLog", "SystemSetting"
]
