# backend/app/api/sms.py
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
import logging

from app.db.database import get_db
from app.auth.auth import Principal, AccessResolver, get_current_principal, get_access_resolver
from app.core.exceptions import InternalError
from app.schemas.schemas import (
    InboundSmsForm,
    SmsStatusForm,
    SendSmsRequest,
    SendSmsResponse,
    parse_payload
)
from app.security.webhook_signature import TwilioSignatureVerifier, get_twilio_verifier
from app.services.sms_service import sms_service
from app.api.telephony import verified_form

router = APIRouter(prefix="/api/sms", tags=["sms"])
logger = logging.getLogger(__name__)


def invalid_signature() -> JSONResponse:
    return JSONResponse(status_code=403, content={"error": "Invalid signature"})


@router.post("/send", response_model=SendSmsResponse)
async def send_sms(
    body: SendSmsRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    resolver: AccessResolver = Depends(get_access_resolver),
    db: AsyncSession = Depends(get_db)
):
    """Send an SMS on behalf of a client"""
    sms_service.validate_send_request(body.client_id, body.to_number, body.body)

    await resolver.authorize_internal_tenant_access(principal.id, body.client_id)

    return await sms_service.send_sms(
        db,
        principal_id=principal.id,
        client_id=body.client_id,
        to_number=body.to_number,
        body=body.body,
        contact_id=body.contact_id,
        request_base_url=str(request.base_url)
    )


@router.post("/webhook/inbound")
async def inbound_sms_webhook(
    request: Request,
    verifier: TwilioSignatureVerifier = Depends(get_twilio_verifier),
    db: AsyncSession = Depends(get_db)
):
    """Store an inbound SMS against the client that owns the number"""
    params = await verified_form(request, verifier)
    if params is None:
        return invalid_signature()

    form = parse_payload(InboundSmsForm, params, "Missing SMS parameters")
    try:
        return await sms_service.handle_inbound(db, form, params)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"❌ Inbound SMS {form.MessageSid} failed: {e}")
        raise InternalError("Webhook processing failed")


@router.post("/webhook/status")
async def sms_status_webhook(
    request: Request,
    verifier: TwilioSignatureVerifier = Depends(get_twilio_verifier),
    db: AsyncSession = Depends(get_db)
):
    """Apply a delivery status callback to the matching outbound message"""
    params = await verified_form(request, verifier)
    if params is None:
        return invalid_signature()

    form = parse_payload(SmsStatusForm, params, "Missing SMS status parameters")
    try:
        return await sms_service.handle_status(db, form, params)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"❌ SMS status {form.MessageSid} failed: {e}")
        raise InternalError("Webhook processing failed")
