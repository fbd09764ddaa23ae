"""Subscription model"""
import uuid
from sqlalchemy import Column, String, DateTime, Numeric, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Subscription(Base):
    """A granted 30-day access window, one per completed payment"""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    user_role = Column(String(20), nullable=False)  # role snapshot at grant time
    plan_type = Column(String(50), nullable=False)  # 'monthly'
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), default="GYD", nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), nullable=False)  # 'active', 'expired', 'cancelled'
    payment_method = Column(String(20), nullable=True)
    payment_reference = Column(String(255), nullable=True, index=True)  # MMG transaction id
    payment_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    user = relationship("User", back_populates="subscriptions")
