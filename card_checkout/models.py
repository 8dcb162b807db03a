from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, JSON
from card_checkout.database import Base


def _now():
    return datetime.now(timezone.utc)


class CheckoutSessionRecord(Base):
    __tablename__ = "checkout_sessions"

    id = Column(String, primary_key=True)
    cart_id = Column(String, index=True, nullable=True)
    amount = Column(Integer, nullable=True)             # minor units (cents)
    currency_code = Column(String, nullable=True)
    token = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    gateway_ref = Column(String, nullable=True)         # FluidPay transaction id
    last_error_kind = Column(String, nullable=True)
    last_error_message = Column(String, nullable=True)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)
