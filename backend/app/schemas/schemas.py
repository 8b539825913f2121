# backend/app/schemas/schemas.py
from pydantic import BaseModel, EmailStr, Field, ConfigDict, ValidationError, field_validator
from typing import Optional, List, Dict, Any, Mapping, Type, TypeVar, Union
from uuid import UUID

from app.core.exceptions import InvalidRequest

T = TypeVar("T", bound=BaseModel)


def parse_payload(model: Type[T], data: Mapping[str, Any], message: str = "Invalid request") -> T:
    """Parse an untyped webhook map into its typed model at the boundary."""
    try:
        return model.model_validate(dict(data))
    except ValidationError:
        raise InvalidRequest(message)


def _expandable_id(value: Any) -> Any:
    # Stripe fields such as `customer` are an id string or an expanded object
    if isinstance(value, dict):
        return value.get("id")
    return value


# Twilio webhook forms (field names as Twilio posts them)
class TwilioForm(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class IncomingVoiceForm(TwilioForm):
    CallSid: str = Field(min_length=1)
    To: str = Field(min_length=1)
    From: Optional[str] = None
    CallStatus: Optional[str] = None


class ClientVoiceForm(TwilioForm):
    CallSid: str = Field(min_length=1)
    To: str = Field(min_length=1)
    From: Optional[str] = None  # "client:<identity>" for softphone calls
    CallStatus: Optional[str] = None
    client_id: UUID


class InboundSmsForm(TwilioForm):
    MessageSid: str = Field(min_length=1)
    From: str = Field(min_length=1)
    To: str = Field(min_length=1)
    Body: Optional[str] = None
    MessageStatus: Optional[str] = None


class SmsStatusForm(TwilioForm):
    MessageSid: str = Field(min_length=1)
    MessageStatus: str = Field(min_length=1)
    ErrorCode: Optional[str] = None
    ErrorMessage: Optional[str] = None


# Stripe event payloads
class StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    customer: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("customer", mode="before")
    @classmethod
    def _customer_id(cls, value):
        return _expandable_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, value):
        return value or {}

    @property
    def metadata_client_id(self) -> Optional[str]:
        value = self.metadata.get("client_id")
        return str(value) if value else None


class CheckoutSessionObject(StripeObject):
    mode: Optional[str] = None
    subscription: Optional[str] = None
    payment_intent: Optional[str] = None
    client_reference_id: Optional[str] = None

    @field_validator("subscription", "payment_intent", mode="before")
    @classmethod
    def _expanded(cls, value):
        return _expandable_id(value)


class StripePrice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    price: Optional[StripePrice] = None
    # Newer API versions moved the billing period onto items
    current_period_end: Optional[int] = None


class SubscriptionItems(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(StripeObject):
    status: str
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False

    @property
    def price_id(self) -> Optional[str]:
        for item in self.items.data:
            if item.price:
                return item.price.id
        return None

    @property
    def period_end(self) -> Optional[int]:
        if self.current_period_end:
            return self.current_period_end
        for item in self.items.data:
            if item.current_period_end:
                return item.current_period_end
        return None


class InvoiceObject(StripeObject):
    status: Optional[str] = None
    paid: Optional[bool] = None
    subscription: Optional[str] = None
    parent: Optional[Dict[str, Any]] = None

    @field_validator("subscription", mode="before")
    @classmethod
    def _expanded(cls, value):
        return _expandable_id(value)

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        # 2025 API versions nest it under parent.subscription_details
        details = (self.parent or {}).get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))

    @property
    def resulting_status(self) -> str:
        if self.status:
            return self.status
        return "paid" if self.paid else "unpaid"


class PaymentIntentObject(StripeObject):
    status: str
    amount: Optional[int] = None
    amount_received: Optional[int] = None
    currency: Optional[str] = None


class StripeEventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: Dict[str, Any]


class StripeEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    data: StripeEventData


# Authenticated action requests
class SendSmsRequest(BaseModel):
    client_id: Optional[UUID] = None
    contact_id: Optional[UUID] = None
    to_number: Optional[str] = None
    body: Optional[str] = None


class SendSmsResponse(BaseModel):
    thread_id: UUID
    message_id: UUID
    provider_message_sid: str
    status: str


class TelephonyTokenRequest(BaseModel):
    client_id: UUID


class TelephonyTokenResponse(BaseModel):
    token: str
    identity: str
    expires_in: int


class CheckoutSessionRequest(BaseModel):
    client_id: Optional[UUID] = None
    mode: Optional[str] = None
    price_id: Optional[str] = None
    quantity: Union[int, float, None] = 1


class PortalSessionRequest(BaseModel):
    client_id: Optional[UUID] = None


class SessionUrlResponse(BaseModel):
    url: str


class EntitlementResponse(BaseModel):
    client_id: UUID
    is_subscribed: bool
    has_one_time: bool
    has_access: bool


class AnalyzeDocumentRequest(BaseModel):
    client_id: Optional[UUID] = None
    path: Optional[str] = None
    mime_type: Optional[str] = None


class AnalyzeDocumentResponse(BaseModel):
    extraction_id: UUID
    extracted: Dict[str, Any]


class DocumentExtractionResponse(BaseModel):
    id: UUID
    client_id: UUID
    path: str
    mime_type: Optional[str] = None
    extracted: Optional[Dict[str, Any]] = None
    created_by: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)


class SignedUrlResponse(BaseModel):
    url: str
    expires_in: int


class ClientInviteRequest(BaseModel):
    client_name: Optional[str] = None
    client_user_email: Optional[EmailStr] = None
    client_user_name: Optional[str] = None
    send_invite: bool = True


class ClientInviteResponse(BaseModel):
    client_id: UUID
    user_id: UUID
    invite_sent: bool
    temp_password: Optional[str] = None
