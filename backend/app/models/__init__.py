# backend/app/models/__init__.py
from .models import (
    Base,
    Role,
    INTERNAL_ROLES,
    CallDirection,
    MessageDirection,
    ConsentStatus,
    Client,
    Profile,
    ClientUser,
    ClientStaff,
    ExternalEvent,
    TelephonySettings,
    TelephonyIdentity,
    Call,
    CallEvent,
    Contact,
    SmsThread,
    SmsMessage,
    DoNotContact,
    ContactConsent,
    AuditLog,
    DocumentExtraction
)
from .stripe_models import (
    BillingCustomer,
    BillingSubscription,
    BillingOneTimePayment,
    ENTITLED_SUBSCRIPTION_STATUSES,
    ENTITLED_PAYMENT_STATUSES
)

__all__ = [
    "Base",
    "Role",
    "INTERNAL_ROLES",
    "CallDirection",
    "MessageDirection",
    "ConsentStatus",
    "Client",
    "Profile",
    "ClientUser",
    "ClientStaff",
    "ExternalEvent",
    "TelephonySettings",
    "TelephonyIdentity",
    "Call",
    "CallEvent",
    "Contact",
    "SmsThread",
    "SmsMessage",
    "DoNotContact",
    "ContactConsent",
    "AuditLog",
    "DocumentExtraction",
    "BillingCustomer",
    "BillingSubscription",
    "BillingOneTimePayment",
    "ENTITLED_SUBSCRIPTION_STATUSES",
    "ENTITLED_PAYMENT_STATUSES"
]
