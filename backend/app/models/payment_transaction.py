"""PaymentTransaction model"""
import uuid
from sqlalchemy import Column, String, DateTime, Numeric, Text, JSON, ForeignKey, Index, text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class PaymentTransaction(Base):
    """One attempt to pay for a subscription. The id doubles as the MMG merchant transaction id."""
    __tablename__ = "payment_transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), default="GYD", nullable=False)
    payment_method = Column(String(20), default="mmg", nullable=False)
    status = Column(String(20), default=STATUS_PENDING, nullable=False, index=True)  # 'pending', 'completed', 'failed'
    mmg_transaction_id = Column(String(255), nullable=True, index=True)
    mmg_reference = Column(String(255), nullable=True)
    gateway_response = Column(JSON, nullable=True)  # raw payload kept for audit/disputes
    error_message = Column(Text, nullable=True)
    initiated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    user = relationship("User", back_populates="payment_transactions")
    subscription = relationship("Subscription")

    __table_args__ = (
        # A gateway transaction can complete at most one attempt, so it can never be claimed by two users
        Index(
            'uq_payment_transactions_completed_mmg_id',
            'mmg_transaction_id',
            unique=True,
            postgresql_where=text("status = 'completed'"),
            sqlite_where=text("status = 'completed'"),
        ),
        Index('ix_payment_transactions_user_mmg', 'user_id', 'mmg_transaction_id'),
    )
