import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Numeric, String, Text
from jojopay.database import Base


def _uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(String, primary_key=True)          # e.g. "basic"
    name = Column(String, nullable=False)
    price_usd = Column(Numeric(10, 2), nullable=False)
    is_lifetime = Column(Boolean, default=False)
    duration_days = Column(Integer, default=365)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, index=True, nullable=False)
    plan_id = Column(String, nullable=False)
    provider = Column(String, nullable=False)                  # paypal | tap
    provider_order_id = Column(String, index=True)             # not unique, retried creation may duplicate
    provider_capture_id = Column(String, index=True)
    payer_id = Column(String)
    amount_usd = Column(Numeric(10, 2))
    status = Column(String, default="pending")                 # pending | completed | failed | cancelled
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(DateTime(timezone=True))

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "provider": self.provider,
            "provider_order_id": self.provider_order_id,
            "provider_capture_id": self.provider_capture_id,
            "amount_usd": float(self.amount_usd) if self.amount_usd is not None else None,
            "status": self.status,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class Subscription(Base):
    __tablename__ = "user_subscriptions"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, index=True, nullable=False)
    plan_id = Column(String, nullable=False)
    status = Column(String, default="active")                  # active | cancelled | expired
    start_date = Column(DateTime(timezone=True), default=utcnow)
    end_date = Column(DateTime(timezone=True))                 # null for lifetime plans
    is_lifetime = Column(Boolean, default=False)
    payment_method = Column(String)
    payment_id = Column(String, unique=True)                   # provider charge/capture id
    transaction_id = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "is_lifetime": self.is_lifetime,
            "payment_method": self.payment_method,
            "payment_id": self.payment_id,
            "transaction_id": self.transaction_id,
        }


class PaymentLog(Base):
    __tablename__ = "payments_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String)
    provider_ref = Column(String, index=True)
    status = Column(String)
    user_id = Column(String)
    payload = Column(JSON)
    logged_at = Column(DateTime(timezone=True), default=utcnow)
