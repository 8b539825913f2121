"""
Stripe billing service: webhook processing and checkout/portal sessions
"""
import json
import threading
import stripe
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from uuid import UUID
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select, update
import logging

from app.core.config import settings
from app.core.exceptions import ConfigurationError, InvalidRequest, InternalError, ServiceError, UpstreamFailure
from app.core.provider_calls import call_provider
from app.db.repository import upsert_by_natural_key
from app.models.models import Client
from app.models.stripe_models import BillingCustomer, BillingSubscription, BillingOneTimePayment
from app.schemas.schemas import (
    StripeEvent,
    CheckoutSessionObject,
    SubscriptionObject,
    InvoiceObject,
    PaymentIntentObject
)
from app.security.audit_logger import audit_logger
from app.services.idempotency_service import record_if_new, stripe_event_key

logger = logging.getLogger(__name__)

CHECKOUT_MODES = ("subscription", "payment")

_stripe_lock = threading.Lock()
_stripe_configured = False


def get_stripe():
    """Configure the Stripe SDK once per process and return it."""
    global _stripe_configured
    if _stripe_configured:
        return stripe
    with _stripe_lock:
        if not _stripe_configured:
            if not settings.STRIPE_SECRET_KEY:
                raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
            stripe.api_key = settings.STRIPE_SECRET_KEY
            stripe.api_version = settings.STRIPE_API_VERSION
            _stripe_configured = True
    return stripe


def to_plain_dict(stripe_object) -> Dict[str, Any]:
    """StripeObject (or plain dict) to a JSON-native dict."""
    if isinstance(stripe_object, dict) and not isinstance(stripe_object, stripe.StripeObject):
        return stripe_object
    return json.loads(str(stripe_object))


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


def _parse_uuid(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


class StripeService:
    """Service for Stripe webhooks and billing sessions"""

    def __init__(self, webhook_secret: Optional[str] = None):
        self._webhook_secret = webhook_secret

    @property
    def webhook_secret(self) -> Optional[str]:
        return self._webhook_secret if self._webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET

    # Webhooks

    def verify_event(self, payload: bytes, sig_header: Optional[str]) -> StripeEvent:
        """Verify the signature over the raw body, then parse the event."""
        if not sig_header or not self.webhook_secret:
            raise InvalidRequest("Missing Stripe signature or webhook secret")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, sig_header, self.webhook_secret)
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            raise InvalidRequest("Invalid signature")

        try:
            return StripeEvent.model_validate(json.loads(body))
        except (ValueError, ValidationError):
            raise InvalidRequest("Invalid payload")

    async def handle_event(self, event: StripeEvent, db: AsyncSession) -> Dict[str, Any]:
        """Ledger the event and apply it; one transaction per delivery."""
        try:
            first_seen = await record_if_new(
                db,
                stripe_event_key(event.id),
                payload=event.model_dump(),
                event_type=event.type,
                source="stripe"
            )
            if not first_seen:
                await db.rollback()
                return {"received": True, "duplicate": True}

            await self._dispatch(event, db)
            await db.commit()
        except (SQLAlchemyError, ServiceError, ValidationError) as e:
            await db.rollback()
            logger.error(f"❌ Stripe webhook {event.id} ({event.type}) failed: {e}")
            raise InternalError("Webhook processing failed")

        logger.info(f"✅ Processed Stripe event {event.id} ({event.type})")
        return {"received": True}

    async def _dispatch(self, event: StripeEvent, db: AsyncSession):
        obj = event.data.object

        if event.type == "checkout.session.completed":
            await self._handle_checkout_completed(CheckoutSessionObject.model_validate(obj), db)

        elif event.type in (
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted"
        ):
            await self._handle_subscription_event(SubscriptionObject.model_validate(obj), db)

        elif event.type in ("invoice.paid", "invoice.payment_failed"):
            await self._handle_invoice_event(InvoiceObject.model_validate(obj), db)

        elif event.type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
            await self._handle_payment_intent_event(PaymentIntentObject.model_validate(obj), db)

        else:
            logger.debug(f"Ignoring Stripe event type {event.type}")

    async def resolve_client_id(
        self,
        db: AsyncSession,
        stripe_customer_id: Optional[str],
        metadata_client_id: Optional[str],
        object_id: str
    ) -> Optional[UUID]:
        """Customer mapping first, then metadata.client_id on the object."""
        mapped = None
        if stripe_customer_id:
            result = await db.execute(
                select(BillingCustomer.client_id).where(
                    BillingCustomer.stripe_customer_id == stripe_customer_id
                )
            )
            mapped = result.scalar_one_or_none()

        from_metadata = _parse_uuid(metadata_client_id)
        if metadata_client_id and from_metadata is None:
            logger.warning(f"Ignoring malformed metadata client_id on {object_id}")

        if mapped and from_metadata and mapped != from_metadata:
            # Customer mapping wins; a disagreement is worth a look
            audit_logger.log_suspicious_activity(
                activity_type="stripe_tenant_mismatch",
                details={
                    "object_id": object_id,
                    "stripe_customer_id": stripe_customer_id,
                    "mapped_client_id": str(mapped),
                    "metadata_client_id": str(from_metadata)
                }
            )
            return mapped

        if mapped:
            return mapped

        if from_metadata:
            exists = await db.execute(select(Client.id).where(Client.id == from_metadata))
            if exists.scalar_one_or_none() is None:
                logger.warning(f"Metadata client {from_metadata} on {object_id} does not exist")
                return None
        return from_metadata

    async def ensure_billing_customer(self, db: AsyncSession, client_id: UUID, stripe_customer_id: str):
        await upsert_by_natural_key(
            db,
            BillingCustomer,
            {"client_id": client_id, "stripe_customer_id": stripe_customer_id},
            conflict_columns=["client_id"]
        )

    async def upsert_subscription(self, db: AsyncSession, client_id: UUID, subscription: SubscriptionObject):
        await upsert_by_natural_key(
            db,
            BillingSubscription,
            {
                "client_id": client_id,
                "stripe_customer_id": subscription.customer,
                "stripe_subscription_id": subscription.id,
                "status": subscription.status,
                "price_id": subscription.price_id,
                "current_period_end": _timestamp(subscription.period_end),
                "cancel_at_period_end": subscription.cancel_at_period_end,
                "updated_at": datetime.now(timezone.utc)
            },
            conflict_columns=["stripe_subscription_id"]
        )
        logger.info(f"Upserted subscription {subscription.id} ({subscription.status}) for client {client_id}")

    async def upsert_one_time_payment(self, db: AsyncSession, client_id: UUID, intent: PaymentIntentObject):
        await upsert_by_natural_key(
            db,
            BillingOneTimePayment,
            {
                "client_id": client_id,
                "stripe_customer_id": intent.customer,
                "stripe_payment_intent_id": intent.id,
                "status": intent.status,
                "amount": intent.amount_received if intent.amount_received is not None else intent.amount,
                "currency": intent.currency,
                "updated_at": datetime.now(timezone.utc)
            },
            conflict_columns=["stripe_payment_intent_id"]
        )
        logger.info(f"Upserted payment {intent.id} ({intent.status}) for client {client_id}")

    async def _handle_checkout_completed(self, session: CheckoutSessionObject, db: AsyncSession):
        client_id = await self.resolve_client_id(
            db, session.customer, session.metadata_client_id, session.id
        )
        if not client_id:
            logger.warning(f"checkout.session.completed {session.id} without client_id")
            return

        if session.customer:
            await self.ensure_billing_customer(db, client_id, session.customer)

        sdk = get_stripe()
        if session.mode == "subscription" and session.subscription:
            subscription = await call_provider(
                "Stripe", sdk.Subscription.retrieve, session.subscription,
                provider_errors=(stripe.StripeError,)
            )
            await self.upsert_subscription(
                db, client_id, SubscriptionObject.model_validate(to_plain_dict(subscription))
            )

        elif session.mode == "payment" and session.payment_intent:
            intent = await call_provider(
                "Stripe", sdk.PaymentIntent.retrieve, session.payment_intent,
                provider_errors=(stripe.StripeError,)
            )
            await self.upsert_one_time_payment(
                db, client_id, PaymentIntentObject.model_validate(to_plain_dict(intent))
            )

    async def _handle_subscription_event(self, subscription: SubscriptionObject, db: AsyncSession):
        client_id = await self.resolve_client_id(
            db, subscription.customer, subscription.metadata_client_id, subscription.id
        )
        if not client_id:
            logger.warning(f"Subscription event without client_id: {subscription.id}")
            return

        if subscription.customer:
            await self.ensure_billing_customer(db, client_id, subscription.customer)
        await self.upsert_subscription(db, client_id, subscription)

    async def _handle_invoice_event(self, invoice: InvoiceObject, db: AsyncSession):
        subscription_id = invoice.subscription_id
        if not subscription_id:
            return
        await db.execute(
            update(BillingSubscription)
            .where(BillingSubscription.stripe_subscription_id == subscription_id)
            .values(status=invoice.resulting_status, updated_at=datetime.now(timezone.utc))
        )
        logger.info(f"Subscription {subscription_id} status set to {invoice.resulting_status} from invoice {invoice.id}")

    async def _handle_payment_intent_event(self, intent: PaymentIntentObject, db: AsyncSession):
        client_id = await self.resolve_client_id(
            db, intent.customer, intent.metadata_client_id, intent.id
        )
        if not client_id:
            logger.warning(f"payment_intent event without client_id: {intent.id}")
            return
        await self.upsert_one_time_payment(db, client_id, intent)

    # Sessions

    async def get_or_create_customer(
        self,
        db: AsyncSession,
        client_id: UUID,
        email: Optional[str] = None
    ) -> str:
        """Stripe customer id for a client, created on first use."""
        result = await db.execute(
            select(BillingCustomer.stripe_customer_id).where(BillingCustomer.client_id == client_id)
        )
        existing = result.scalar_one_or_none()
        if existing:
            return existing

        sdk = get_stripe()
        customer = await call_provider(
            "Stripe",
            sdk.Customer.create,
            email=email or None,
            metadata={"client_id": str(client_id)},
            provider_errors=(stripe.StripeError,)
        )
        await self.ensure_billing_customer(db, client_id, customer.id)
        await db.commit()

        logger.info(f"Created Stripe customer {customer.id} for client {client_id}")
        return customer.id

    def _site_url(self) -> str:
        if not settings.SITE_URL:
            raise ConfigurationError("SITE_URL is not configured")
        return settings.SITE_URL.rstrip("/")

    def validate_checkout_request(self, mode: Optional[str], price_id: Optional[str], quantity) -> int:
        if mode not in CHECKOUT_MODES:
            raise InvalidRequest("mode must be subscription or payment")
        if quantity is None:
            quantity = 1
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) \
                or quantity != int(quantity) or quantity < 1:
            raise InvalidRequest("quantity must be a positive integer")

        allowed = settings.subscription_price_ids if mode == "subscription" else settings.one_time_price_ids
        if allowed is not None and price_id not in allowed:
            if mode == "subscription":
                raise InvalidRequest("price_id is not allowed for subscriptions")
            raise InvalidRequest("price_id is not allowed for one-time payments")
        return int(quantity)

    async def create_checkout_session(
        self,
        db: AsyncSession,
        client_id: UUID,
        mode: str,
        price_id: str,
        quantity: int = 1,
        email: Optional[str] = None
    ) -> str:
        """Create a Checkout Session stamped with the client id; returns its URL."""
        site_url = self._site_url()
        customer_id = await self.get_or_create_customer(db, client_id, email)

        metadata = {"client_id": str(client_id)}
        params = {
            "mode": mode,
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": quantity}],
            "success_url": f"{site_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{site_url}/billing/cancel",
            "metadata": metadata,
        }
        # Stamp the resulting objects too so their own events resolve the tenant
        if mode == "subscription":
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        sdk = get_stripe()
        session = await call_provider(
            "Stripe", sdk.checkout.Session.create, provider_errors=(stripe.StripeError,), **params
        )
        if not session.url:
            raise UpstreamFailure("Stripe did not return a checkout session URL")
        return session.url

    async def create_portal_session(
        self,
        db: AsyncSession,
        client_id: UUID,
        email: Optional[str] = None
    ) -> str:
        """Create a customer portal session; returns its URL."""
        site_url = self._site_url()
        customer_id = await self.get_or_create_customer(db, client_id, email)

        sdk = get_stripe()
        session = await call_provider(
            "Stripe",
            sdk.billing_portal.Session.create,
            customer=customer_id,
            return_url=f"{site_url}/billing",
            provider_errors=(stripe.StripeError,)
        )
        return session.url


# Global service instance
stripe_service = StripeService()
