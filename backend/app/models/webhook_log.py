"""WebhookLog model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime
from datetime import datetime, timezone
from app.models.base import Base


class WebhookLog(Base):
    """Append-only audit row for every decodable MMG callback"""
    __tablename__ = "mmg_webhook_logs"

    id = Column(Integer, primary_key=True, index=True)
    merchant_transaction_id = Column(String(64), nullable=True, index=True)
    transaction_id = Column(String(255), nullable=True, index=True)
    result_code = Column(String(32), nullable=True)
    result_message = Column(Text, nullable=True)
    html_response = Column(Text, nullable=True)
    raw_body = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
