"""
Webhook Event Model - יומן idempotency של webhooks מספק החיוב.

כל משלוח נרשם לפי (provider, idempotency_key). הכנסה כפולה נכשלת על
ה-primary key, וזה הסימן שהאירוע כבר עובד. הטבלה append-only; רק
ניקוי retention מוחק שורות.
"""
from sqlalchemy import BigInteger, Column, DateTime, Index, String

from app.db.database import Base, utcnow


class WebhookEvent(Base):
    """רשומת משלוח webhook שהתקבל"""

    __tablename__ = "webhook_events"

    provider = Column(String(50), primary_key=True)
    idempotency_key = Column(String(200), primary_key=True)
    event_type = Column(String(100), nullable=True)
    received_at = Column(DateTime, default=utcnow, nullable=False)
    payload_hash = Column(String(64), nullable=False)
    linked_user_id = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index("idx_webhook_events_received_at", "received_at"),
        Index("idx_webhook_events_user_received", "linked_user_id", "received_at"),
        Index("idx_webhook_events_type_received", "event_type", "received_at"),
    )
