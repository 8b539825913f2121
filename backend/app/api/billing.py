"""
Billing API endpoints for Stripe integration
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from uuid import UUID
import logging

from app.db.database import get_db
from app.auth.auth import Principal, AccessResolver, get_current_principal, get_access_resolver
from app.core.exceptions import InvalidRequest
from app.schemas.schemas import (
    CheckoutSessionRequest,
    PortalSessionRequest,
    SessionUrlResponse,
    EntitlementResponse
)
from app.security.audit_logger import audit_logger, get_client_ip
from app.services.entitlement_service import EntitlementService
from app.services.stripe_service import stripe_service

router = APIRouter(prefix="/api/billing", tags=["billing"])
logger = logging.getLogger(__name__)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """Handle Stripe webhook events"""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        event = stripe_service.verify_event(payload, sig_header)
    except InvalidRequest as e:
        audit_logger.log_webhook_signature_rejected(
            provider="stripe",
            path=str(request.url.path),
            ip_address=get_client_ip(request),
            reason=e.message
        )
        raise

    return await stripe_service.handle_event(event, db)


@router.post("/create-checkout-session", response_model=SessionUrlResponse)
async def create_checkout_session(
    body: CheckoutSessionRequest,
    principal: Principal = Depends(get_current_principal),
    resolver: AccessResolver = Depends(get_access_resolver),
    db: AsyncSession = Depends(get_db)
):
    """Create a Stripe checkout session for a client"""
    if not body.client_id or not body.mode or not body.price_id:
        raise InvalidRequest("client_id, mode, and price_id are required")
    quantity = stripe_service.validate_checkout_request(body.mode, body.price_id, body.quantity)

    await resolver.authorize_tenant_access(principal.id, body.client_id)

    url = await stripe_service.create_checkout_session(
        db,
        client_id=body.client_id,
        mode=body.mode,
        price_id=body.price_id,
        quantity=quantity,
        email=principal.email
    )
    return {"url": url}


@router.post("/create-portal-session", response_model=SessionUrlResponse)
async def create_portal_session(
    body: PortalSessionRequest,
    principal: Principal = Depends(get_current_principal),
    resolver: AccessResolver = Depends(get_access_resolver),
    db: AsyncSession = Depends(get_db)
):
    """Create a Stripe customer portal session for a client"""
    if not body.client_id:
        raise InvalidRequest("client_id is required")

    await resolver.authorize_tenant_access(principal.id, body.client_id)

    url = await stripe_service.create_portal_session(db, body.client_id, email=principal.email)
    return {"url": url}


@router.get("/entitlements", response_model=EntitlementResponse)
async def get_entitlements(
    client_id: UUID,
    principal: Principal = Depends(get_current_principal),
    resolver: AccessResolver = Depends(get_access_resolver),
    db: AsyncSession = Depends(get_db)
):
    """Whether a client currently has access to paid features"""
    role = await resolver.authorize_tenant_access(principal.id, client_id)

    entitlement = await EntitlementService(resolver).get_entitlement(
        db, principal.id, client_id, authorized_role=role
    )
    return {
        "client_id": client_id,
        "is_subscribed": entitlement.is_subscribed,
        "has_one_time": entitlement.has_one_time,
        "has_access": entitlement.has_access,
    }
