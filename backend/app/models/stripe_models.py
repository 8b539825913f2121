"""
Stripe-related database models
"""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from app.models.models import Base, utcnow

ENTITLED_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})
ENTITLED_PAYMENT_STATUSES = frozenset({"succeeded", "paid"})


class BillingCustomer(Base):
    __tablename__ = "billing_customers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, unique=True)
    stripe_customer_id = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    client = relationship("Client", back_populates="billing_customer")


class BillingSubscription(Base):
    __tablename__ = "billing_subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    stripe_customer_id = Column(String, nullable=True)
    stripe_subscription_id = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False)  # active, trialing, past_due, canceled, etc.
    price_id = Column(String, nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class BillingOneTimePayment(Base):
    __tablename__ = "billing_one_time_payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    stripe_customer_id = Column(String, nullable=True)
    stripe_payment_intent_id = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False)  # succeeded, processing, requires_payment_method, ...
    amount = Column(Integer, nullable=True)  # minor units
    currency = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
