"""
User State Model - מצב הזכאות של משתמש צ'אט (שורה אחת למשתמש, נוצרת בעצלות).
"""
from sqlalchemy import BigInteger, Column, DateTime, Enum as SQLEnum, Index, String, Text

from app.db.database import Base, utcnow
from app.state_machine.states import SubscriptionState


class UserState(Base):
    """Entitlement record keyed by the chat platform's numeric user id"""

    __tablename__ = "users"

    user_id = Column(BigInteger, primary_key=True, autoincrement=False)
    state = Column(
        SQLEnum(
            SubscriptionState,
            name="subscription_state",
            native_enum=False,
            length=32,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=SubscriptionState.NOT_SUBSCRIBED,
    )
    external_contact_id = Column(String(100), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    # watermark - epoch millis של האירוע האחרון שהוחל
    last_event_at = Column(BigInteger, nullable=True)
    last_resync_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_users_external_contact_id", "external_contact_id"),
        Index("idx_users_state", "state"),
    )

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "state": self.state.value if self.state else None,
            "has_access": bool(self.state and self.state.has_access),
            "external_contact_id": self.external_contact_id,
            "cancel_reason": self.cancel_reason,
            "last_event_at": self.last_event_at,
            "last_resync_at": self.last_resync_at.isoformat() if self.last_resync_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
