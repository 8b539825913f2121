# backend/app/schemas/__init__.py
from .schemas import (
    parse_payload,

    # Twilio webhook forms
    IncomingVoiceForm,
    ClientVoiceForm,
    InboundSmsForm,
    SmsStatusForm,

    # Stripe events
    StripeEvent,
    CheckoutSessionObject,
    SubscriptionObject,
    InvoiceObject,
    PaymentIntentObject,

    # Requests / responses
    SendSmsRequest,
    SendSmsResponse,
    TelephonyTokenRequest,
    TelephonyTokenResponse,
    CheckoutSessionRequest,
    PortalSessionRequest,
    SessionUrlResponse,
    EntitlementResponse,
    AnalyzeDocumentRequest,
    AnalyzeDocumentResponse,
    DocumentExtractionResponse,
    SignedUrlResponse,
    ClientInviteRequest,
    ClientInviteResponse
)
