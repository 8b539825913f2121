# backend/app/api/telephony.py
from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from typing import Dict, Any, Optional
import logging

from app.db.database import get_db
from app.auth.auth import Principal, AccessResolver, get_current_principal, get_access_resolver
from app.core.exceptions import InvalidRequest, ServiceError
from app.schemas.schemas import (
    IncomingVoiceForm,
    ClientVoiceForm,
    TelephonyTokenRequest,
    TelephonyTokenResponse,
    parse_payload
)
from app.security.audit_logger import audit_logger, get_client_ip
from app.security.webhook_signature import TwilioSignatureVerifier, get_twilio_verifier
from app.services.telephony_service import (
    telephony_service, say, TwimlReply,
    MISSING_PARAMS_MESSAGE, UNAVAILABLE_MESSAGE
)

router = APIRouter(prefix="/api/telephony", tags=["telephony"])
logger = logging.getLogger(__name__)


def twiml(reply: TwimlReply) -> Response:
    return Response(content=reply.body, status_code=reply.status_code, media_type="application/xml")


async def read_form(request: Request) -> Dict[str, Any]:
    form_data = await request.form()
    return {key: value for key, value in form_data.items()}


async def verified_form(request: Request, verifier: TwilioSignatureVerifier) -> Optional[Dict[str, Any]]:
    """Form params, or None when the signature does not match."""
    params = await read_form(request)
    if not await verifier.verify_request(request, params):
        audit_logger.log_webhook_signature_rejected(
            provider="twilio",
            path=str(request.url.path),
            ip_address=get_client_ip(request)
        )
        return None
    return params


# Webhook endpoints for telephony provider (Twilio)
@router.post("/webhook/incoming-voice")
async def incoming_voice_webhook(
    request: Request,
    verifier: TwilioSignatureVerifier = Depends(get_twilio_verifier),
    db: AsyncSession = Depends(get_db)
):
    """Route an inbound call to an online agent, the fallback number, or an apology"""
    params = await verified_form(request, verifier)
    if params is None:
        return twiml(say("Request could not be verified.", status_code=403))

    try:
        form = parse_payload(IncomingVoiceForm, params)
    except InvalidRequest:
        return twiml(say(MISSING_PARAMS_MESSAGE, status_code=400))

    try:
        reply = await telephony_service.route_incoming_call(db, form, params)
    except (SQLAlchemyError, ServiceError) as e:
        await db.rollback()
        logger.error(f"❌ Error routing inbound call {form.CallSid}: {e}")
        reply = say(UNAVAILABLE_MESSAGE, status_code=500)
    return twiml(reply)


@router.post("/webhook/client-voice")
async def client_voice_webhook(
    request: Request,
    verifier: TwilioSignatureVerifier = Depends(get_twilio_verifier),
    db: AsyncSession = Depends(get_db)
):
    """Dial out from a softphone using the client's provisioned caller id"""
    params = await verified_form(request, verifier)
    if params is None:
        return twiml(say("Request could not be verified.", status_code=403))

    # client_id travels as a TwiML App parameter or on the voice URL
    values = dict(params)
    values["client_id"] = params.get("client_id") or request.query_params.get("client_id")
    try:
        form = parse_payload(ClientVoiceForm, values)
    except InvalidRequest:
        return twiml(say(MISSING_PARAMS_MESSAGE, status_code=400))

    try:
        reply = await telephony_service.route_client_dial(db, form, params)
    except (SQLAlchemyError, ServiceError) as e:
        await db.rollback()
        logger.error(f"❌ Error placing client call {form.CallSid}: {e}")
        reply = say(UNAVAILABLE_MESSAGE, status_code=500)
    return twiml(reply)


@router.post("/token", response_model=TelephonyTokenResponse)
async def create_voice_token(
    body: TelephonyTokenRequest,
    principal: Principal = Depends(get_current_principal),
    resolver: AccessResolver = Depends(get_access_resolver),
    db: AsyncSession = Depends(get_db)
):
    """Issue a softphone access token and register the caller's identity"""
    await resolver.authorize_internal_tenant_access(principal.id, body.client_id)

    identity, token, ttl = await telephony_service.issue_voice_token(db, principal.id)
    return {"identity": identity, "token": token, "expires_in": ttl}
