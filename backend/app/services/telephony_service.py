# backend/app/services/telephony_service.py
"""
Telephony service: inbound call routing, softphone dialing and voice tokens
"""

import threading
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_
from twilio.rest import Client as TwilioClient
from twilio.jwt.access_token import AccessToken
from twilio.jwt.access_token.grants import VoiceGrant
from twilio.twiml.voice_response import VoiceResponse, Dial

from app.core.config import settings
from app.core.exceptions import ConfigurationError
from app.db.repository import upsert_by_natural_key
from app.models.models import (
    TelephonySettings, TelephonyIdentity, Call, CallEvent,
    ClientStaff, Profile, Role, CallDirection
)
from app.schemas.schemas import IncomingVoiceForm, ClientVoiceForm

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "We are unavailable right now."
NO_AGENTS_MESSAGE = "No agents are available."
MISSING_PARAMS_MESSAGE = "Missing call parameters."
NOT_CONFIGURED_MESSAGE = "Telephony is not configured."


@dataclass
class TwimlReply:
    body: str
    status_code: int = 200


def say(message: str, status_code: int = 200, hangup: bool = False) -> TwimlReply:
    response = VoiceResponse()
    response.say(message)
    if hangup:
        response.hangup()
    return TwimlReply(str(response), status_code)


def identity_for(principal_id: UUID) -> str:
    return f"user_{principal_id}"


def strip_client_prefix(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    if value.startswith("client:"):
        return value[len("client:"):]
    return value


class TelephonyService:
    """Service for voice webhooks and the shared Twilio REST client"""

    def __init__(self):
        self._twilio_client: Optional[TwilioClient] = None
        self._client_lock = threading.Lock()

    @property
    def twilio_client(self) -> TwilioClient:
        """Shared REST client, created on first use."""
        if self._twilio_client is None:
            with self._client_lock:
                if self._twilio_client is None:
                    if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_AUTH_TOKEN:
                        raise ConfigurationError("Twilio credentials are not configured")
                    self._twilio_client = TwilioClient(
                        settings.TWILIO_ACCOUNT_SID,
                        settings.TWILIO_AUTH_TOKEN
                    )
                    logger.info("✅ Twilio client initialized")
        return self._twilio_client

    async def get_settings_by_number(self, db: AsyncSession, phone_number: str) -> Optional[TelephonySettings]:
        result = await db.execute(
            select(TelephonySettings).where(TelephonySettings.twilio_phone_number == phone_number)
        )
        return result.scalar_one_or_none()

    async def get_settings_for_client(self, db: AsyncSession, client_id: UUID) -> Optional[TelephonySettings]:
        result = await db.execute(
            select(TelephonySettings).where(TelephonySettings.client_id == client_id)
        )
        return result.scalar_one_or_none()

    async def find_available_identity(self, db: AsyncSession, client_id: UUID) -> Optional[str]:
        """Most recently seen softphone among the tenant's staff and all admins."""
        staff_ids = select(ClientStaff.user_id).where(ClientStaff.client_id == client_id)
        admin_ids = select(Profile.id).where(Profile.role == Role.ADMIN.value)
        result = await db.execute(
            select(TelephonyIdentity.identity)
            .where(or_(
                TelephonyIdentity.user_id.in_(staff_ids),
                TelephonyIdentity.user_id.in_(admin_ids)
            ))
            .order_by(TelephonyIdentity.last_seen_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _record_call(
        self,
        db: AsyncSession,
        values: Dict[str, Any],
        event_type: str,
        payload: Dict[str, Any]
    ) -> UUID:
        call_id = await upsert_by_natural_key(
            db, Call, values, conflict_columns=["provider_call_sid"]
        )
        db.add(CallEvent(
            call_id=call_id,
            client_id=values["client_id"],
            event_type=event_type,
            payload=payload
        ))
        await db.commit()
        return call_id

    async def route_incoming_call(
        self,
        db: AsyncSession,
        form: IncomingVoiceForm,
        params: Dict[str, Any]
    ) -> TwimlReply:
        """Inbound call: softphone agent, then fallback number, then apology."""
        telephony_settings = await self.get_settings_by_number(db, form.To)
        if not telephony_settings:
            logger.warning(f"📞 Inbound call {form.CallSid} to unknown number {form.To}")
            return say(UNAVAILABLE_MESSAGE)

        client_id = telephony_settings.client_id
        identity = await self.find_available_identity(db, client_id)

        await self._record_call(
            db,
            {
                "client_id": client_id,
                "provider": "twilio",
                "provider_call_sid": form.CallSid,
                "direction": CallDirection.INBOUND.value,
                "from_number": form.From,
                "to_number": form.To,
                "status": form.CallStatus or "ringing",
            },
            event_type="inbound_routing",
            payload=params
        )

        response = VoiceResponse()
        if identity:
            logger.info(f"📞 Routing call {form.CallSid} to {identity}")
            dial = Dial()
            dial.client(identity)
            response.append(dial)
        elif telephony_settings.fallback_number:
            logger.info(f"📞 No agent online, forwarding call {form.CallSid} to fallback")
            dial = Dial()
            dial.number(telephony_settings.fallback_number)
            response.append(dial)
        else:
            logger.info(f"📞 No agent or fallback for call {form.CallSid}")
            return say(NO_AGENTS_MESSAGE, hangup=True)
        return TwimlReply(str(response))

    async def route_client_dial(
        self,
        db: AsyncSession,
        form: ClientVoiceForm,
        params: Dict[str, Any]
    ) -> TwimlReply:
        """Outbound call placed from a softphone on behalf of a tenant."""
        telephony_settings = await self.get_settings_for_client(db, form.client_id)
        if not telephony_settings or not telephony_settings.twilio_phone_number:
            logger.error(f"❌ No provisioned number for client {form.client_id}")
            return say(NOT_CONFIGURED_MESSAGE, status_code=500)

        created_by = None
        identity = strip_client_prefix(form.From)
        if identity:
            result = await db.execute(
                select(TelephonyIdentity.user_id).where(TelephonyIdentity.identity == identity)
            )
            created_by = result.scalar_one_or_none()

        await self._record_call(
            db,
            {
                "client_id": form.client_id,
                "provider": "twilio",
                "provider_call_sid": form.CallSid,
                "direction": CallDirection.OUTBOUND.value,
                "from_number": telephony_settings.twilio_phone_number,
                "to_number": form.To,
                "status": form.CallStatus or "initiated",
                "created_by": created_by,
            },
            event_type="client_dial",
            payload=params
        )

        response = VoiceResponse()
        dial = Dial(caller_id=telephony_settings.twilio_phone_number)
        dial.number(form.To)
        response.append(dial)
        return TwimlReply(str(response))

    async def issue_voice_token(self, db: AsyncSession, principal_id: UUID) -> Tuple[str, str, int]:
        """Register the caller's softphone identity and mint a Voice access token."""
        required = {
            "TWILIO_ACCOUNT_SID": settings.TWILIO_ACCOUNT_SID,
            "TWILIO_API_KEY_SID": settings.TWILIO_API_KEY_SID,
            "TWILIO_API_KEY_SECRET": settings.TWILIO_API_KEY_SECRET,
            "TWILIO_TWIML_APP_SID": settings.TWILIO_TWIML_APP_SID,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigurationError(f"Missing telephony configuration: {', '.join(missing)}")

        identity = identity_for(principal_id)
        await upsert_by_natural_key(
            db,
            TelephonyIdentity,
            {
                "user_id": principal_id,
                "identity": identity,
                "last_seen_at": datetime.now(timezone.utc),
            },
            conflict_columns=["user_id"]
        )
        await db.commit()

        ttl = settings.TELEPHONY_TOKEN_TTL_SECONDS
        token = AccessToken(
            settings.TWILIO_ACCOUNT_SID,
            settings.TWILIO_API_KEY_SID,
            settings.TWILIO_API_KEY_SECRET,
            identity=identity,
            ttl=ttl
        )
        token.add_grant(VoiceGrant(
            outgoing_application_sid=settings.TWILIO_TWIML_APP_SID,
            incoming_allow=True
        ))
        jwt_token = token.to_jwt()
        if isinstance(jwt_token, bytes):
            jwt_token = jwt_token.decode("utf-8")
        return identity, jwt_token, ttl


# Global service instance
telephony_service = TelephonyService()
