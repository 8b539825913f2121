# backend/app/models/models.py
from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, UniqueConstraint, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy import Index
from sqlalchemy.orm import relationship, declarative_base
from sqlalchemy.sql import func
from sqlalchemy import JSON
from datetime import datetime, timezone
import uuid
import enum

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, enum.Enum):
    ADMIN = "admin"
    USER = "user"
    SALES = "sales"
    PARTNER = "partner"
    CLIENT = "client"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> "Role":
        """Closed parse: anything unrecognised is UNKNOWN."""
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).lower()) if value is not None else cls.UNKNOWN
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_internal(self) -> bool:
        return self in INTERNAL_ROLES


INTERNAL_ROLES = frozenset({Role.ADMIN, Role.USER, Role.SALES, Role.PARTNER})


class CallDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class ConsentStatus(str, enum.Enum):
    OPTED_IN = "opted_in"
    OPTED_OUT = "opted_out"


class Client(Base):
    __tablename__ = "clients"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_by = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    client_users = relationship("ClientUser", back_populates="client", cascade="all, delete-orphan")
    staff = relationship("ClientStaff", back_populates="client", cascade="all, delete-orphan")
    telephony_settings = relationship("TelephonySettings", back_populates="client", uselist=False)
    # Note: BillingCustomer is defined in stripe_models.py
    billing_customer = relationship("BillingCustomer", back_populates="client", uselist=False)


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)  # same id the auth provider puts in `sub`
    role = Column(String, nullable=False, default=Role.CLIENT.value)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True, unique=True)
    password_hash = Column(String, nullable=True)  # only for temporary-password invites
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class ClientUser(Base):
    """A tenant's own client-role login."""
    __tablename__ = "client_users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    client = relationship("Client", back_populates="client_users")

    __table_args__ = (UniqueConstraint('user_id', 'client_id', name='unique_client_user'),)


class ClientStaff(Base):
    """Internal staff assigned to a tenant."""
    __tablename__ = "client_staff"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    client = relationship("Client", back_populates="staff")

    __table_args__ = (UniqueConstraint('user_id', 'client_id', name='unique_client_staff'),)


class ExternalEvent(Base):
    """Idempotency ledger. Append-only; the primary key is the delivery key."""
    __tablename__ = "external_events"

    id = Column(String, primary_key=True)  # e.g. "stripe:event:evt_123"
    source = Column(String, nullable=False)  # stripe, twilio
    type = Column(String, nullable=True)
    payload = Column(JSONType, nullable=True)
    received_at = Column(DateTime(timezone=True), default=utcnow)


class TelephonySettings(Base):
    __tablename__ = "telephony_settings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, unique=True)
    twilio_phone_number = Column(String, nullable=True, unique=True)  # inbound tenant lookup key
    fallback_number = Column(String, nullable=True)  # forwarded to when no agent is online
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    client = relationship("Client", back_populates="telephony_settings")


class TelephonyIdentity(Base):
    """Softphone identity registered by the token endpoint."""
    __tablename__ = "user_telephony_identities"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, unique=True)
    identity = Column(String, nullable=False, unique=True)
    last_seen_at = Column(DateTime(timezone=True), default=utcnow)


class Call(Base):
    __tablename__ = "calls"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String, nullable=False, default="twilio")
    provider_call_sid = Column(String, nullable=False, unique=True)
    direction = Column(String, nullable=False)  # CallDirection
    from_number = Column(String, nullable=True)
    to_number = Column(String, nullable=True)
    status = Column(String, nullable=True)
    created_by = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    events = relationship("CallEvent", back_populates="call", cascade="all, delete-orphan")


class CallEvent(Base):
    __tablename__ = "call_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    call_id = Column(Uuid, ForeignKey("calls.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(Uuid, nullable=False)
    event_type = Column(String, nullable=False)  # inbound_routing, client_dial
    payload = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    call = relationship("Call", back_populates="events")


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class SmsThread(Base):
    __tablename__ = "sms_threads"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    contact_id = Column(Uuid, ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True)
    phone = Column(String, nullable=False)  # counterparty number
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    messages = relationship("SmsMessage", back_populates="thread", cascade="all, delete-orphan")

    __table_args__ = (UniqueConstraint('client_id', 'phone', name='unique_thread_per_client_phone'),)


class SmsMessage(Base):
    __tablename__ = "sms_messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    thread_id = Column(Uuid, ForeignKey("sms_threads.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(Uuid, nullable=False)
    direction = Column(String, nullable=False)  # MessageDirection
    from_number = Column(String, nullable=True)
    to_number = Column(String, nullable=True)
    body = Column(Text, nullable=True)
    status = Column(String, nullable=True)
    provider = Column(String, nullable=False, default="twilio")
    provider_message_sid = Column(String, nullable=True, unique=True)
    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_by = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    thread = relationship("SmsThread", back_populates="messages")


class DoNotContact(Base):
    __tablename__ = "do_not_contact"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    contact_id = Column(Uuid, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (UniqueConstraint('client_id', 'contact_id', name='unique_dnc_per_contact'),)


class ContactConsent(Base):
    """Consent history; the newest row per (client, contact, channel) wins."""
    __tablename__ = "contact_consent"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    contact_id = Column(Uuid, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    channel = Column(String, nullable=False, default="sms")
    status = Column(String, nullable=False)  # ConsentStatus
    created_at = Column(DateTime(timezone=True), default=utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    actor_user_id = Column(Uuid, nullable=True)  # null for provider-initiated events
    client_id = Column(Uuid, nullable=True)
    action = Column(String, nullable=False)
    details = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class DocumentExtraction(Base):
    __tablename__ = "document_extractions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    path = Column(String, nullable=False)
    mime_type = Column(String, nullable=True)
    extracted = Column(JSONType, nullable=True)
    created_by = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# Indexes
Index('idx_client_users_client_id', ClientUser.client_id)
Index('idx_client_staff_client_id', ClientStaff.client_id)
Index('idx_calls_client_id', Call.client_id)
Index('idx_call_events_call_id', CallEvent.call_id)
Index('idx_contacts_client_phone', Contact.client_id, Contact.phone)
Index('idx_sms_messages_thread_id', SmsMessage.thread_id)
Index('idx_contact_consent_lookup', ContactConsent.client_id, ContactConsent.contact_id,
      ContactConsent.channel, ContactConsent.created_at)
Index('idx_audit_logs_client_id', AuditLog.client_id)
# Backs the "latest extraction per path" query
Index('idx_document_extractions_latest', DocumentExtraction.client_id, DocumentExtraction.path,
      DocumentExtraction.created_at)
