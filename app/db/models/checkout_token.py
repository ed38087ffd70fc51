"""
Checkout Token Model - טוקן חד-פעמי שמקשר סשן checkout אצל הספק למשתמש פנימי.
"""
from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, String

from app.db.database import Base, utcnow


class CheckoutToken(Base):
    __tablename__ = "checkout_tokens"

    token = Column(String(64), primary_key=True)
    user_id = Column(
        BigInteger,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_checkout_tokens_expires_at", "expires_at"),
    )
