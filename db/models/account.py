"""
Account model.

Accounts are resolved from a verified phone + email pair and hold nothing
else; wallets, balances and contacts live in other services.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, String

from db.engine import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Account(Base):
    """Durable identity created on first completed login."""

    __tablename__ = "accounts"

    id = Column(String(32), primary_key=True, default=lambda: uuid4().hex)
    phone = Column(String(20), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "phone": self.phone,
            "email": self.email,
            "created_at": int(self.created_at.timestamp()) if self.created_at else None,
            "updated_at": int(self.updated_at.timestamp()) if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Account(id={self.id}, phone={self.phone[:5]}...)>"
