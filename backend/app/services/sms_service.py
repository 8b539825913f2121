# backend/app/services/sms_service.py
"""
SMS sending and Twilio messaging webhooks
"""
import logging
from typing import Optional, Dict, Any, List
from uuid import UUID

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.base.exceptions import TwilioException

from app.core.config import settings
from app.core.exceptions import InvalidRequest, Unauthorized, NotFound, ConfigurationError
from app.core.provider_calls import call_provider
from app.db.repository import upsert_by_natural_key
from app.models.models import (
    Contact, SmsThread, SmsMessage, DoNotContact, ContactConsent,
    AuditLog, MessageDirection, ConsentStatus
)
from app.schemas.schemas import InboundSmsForm, SmsStatusForm
from app.services.idempotency_service import record_if_new, sms_inbound_key, sms_status_key
from app.services.telephony_service import TelephonyService, telephony_service

logger = logging.getLogger(__name__)

STATUS_WEBHOOK_PATH = "/api/sms/webhook/status"

# Twilio message lifecycle order; callbacks may arrive out of order
STATUS_RANK = {
    "accepted": 0,
    "scheduled": 0,
    "queued": 1,
    "sending": 2,
    "receiving": 2,
    "sent": 3,
    "received": 4,
    "delivered": 4,
    "undelivered": 4,
    "failed": 4,
    "canceled": 4,
    "read": 5,
}


def statuses_not_superseded_by(status: str) -> List[str]:
    """Known statuses a callback reporting `status` must not overwrite."""
    rank = STATUS_RANK.get(status, 0)
    return [name for name, other in STATUS_RANK.items() if other >= rank]


class SmsService:
    def __init__(self, telephony: TelephonyService):
        self.telephony = telephony

    async def find_contact_id(self, db: AsyncSession, client_id: UUID, phone: str) -> Optional[UUID]:
        result = await db.execute(
            select(Contact.id)
            .where(Contact.client_id == client_id, Contact.phone == phone)
            .order_by(Contact.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_contact_ids(self, db: AsyncSession, client_id: UUID, phone: str) -> List[UUID]:
        result = await db.execute(
            select(Contact.id)
            .where(Contact.client_id == client_id, Contact.phone == phone)
            .order_by(Contact.created_at)
        )
        return list(result.scalars().all())

    async def contact_belongs_to_client(self, db: AsyncSession, client_id: UUID, contact_id: UUID) -> bool:
        result = await db.execute(
            select(Contact.id).where(Contact.id == contact_id, Contact.client_id == client_id)
        )
        return result.scalar_one_or_none() is not None

    async def ensure_contact_allowed(self, db: AsyncSession, client_id: UUID, contact_id: Optional[UUID]):
        """Do-not-contact entry or a latest sms opt-out vetoes the send."""
        if not contact_id:
            return

        dnc = await db.execute(
            select(DoNotContact.id).where(
                DoNotContact.client_id == client_id,
                DoNotContact.contact_id == contact_id
            ).limit(1)
        )
        if dnc.first() is not None:
            raise Unauthorized("Contact is on the do-not-contact list")

        consent = await db.execute(
            select(ContactConsent.status)
            .where(
                ContactConsent.client_id == client_id,
                ContactConsent.contact_id == contact_id,
                ContactConsent.channel == "sms"
            )
            .order_by(ContactConsent.created_at.desc())
            .limit(1)
        )
        if consent.scalar_one_or_none() == ConsentStatus.OPTED_OUT.value:
            raise Unauthorized("Contact has opted out of SMS")

    def status_callback_url(self, request_base_url: str) -> str:
        base = (settings.PUBLIC_BASE_URL or request_base_url).rstrip("/")
        return f"{base}{STATUS_WEBHOOK_PATH}"

    async def upsert_thread(
        self,
        db: AsyncSession,
        client_id: UUID,
        phone: str,
        contact_id: Optional[UUID]
    ) -> UUID:
        values = {"client_id": client_id, "phone": phone, "contact_id": contact_id}
        # Keep an existing contact link when this message could not be matched
        update_columns = ["contact_id"] if contact_id else []
        return await upsert_by_natural_key(
            db, SmsThread, values,
            conflict_columns=["client_id", "phone"],
            update_columns=update_columns
        )

    async def send_sms(
        self,
        db: AsyncSession,
        principal_id: UUID,
        client_id: UUID,
        to_number: str,
        body: str,
        contact_id: Optional[UUID] = None,
        request_base_url: str = ""
    ) -> Dict[str, Any]:
        """Send an outbound SMS. The caller has already been authorized for the client."""
        if contact_id and not await self.contact_belongs_to_client(db, client_id, contact_id):
            raise NotFound("Contact not found")

        # Every contact reachable at the destination number is vetted, not only the one named
        number_contact_ids = await self.find_contact_ids(db, client_id, to_number)
        for candidate_id in dict.fromkeys([contact_id, *number_contact_ids]):
            await self.ensure_contact_allowed(db, client_id, candidate_id)
        if not contact_id and number_contact_ids:
            contact_id = number_contact_ids[0]

        messaging_service_sid = settings.TWILIO_MESSAGING_SERVICE_SID
        from_number = None
        if not messaging_service_sid:
            telephony_settings = await self.telephony.get_settings_for_client(db, client_id)
            if not telephony_settings or not telephony_settings.twilio_phone_number:
                raise ConfigurationError("No Twilio phone number configured for this client")
            from_number = telephony_settings.twilio_phone_number

        send_args = {
            "to": to_number,
            "body": body,
            "status_callback": self.status_callback_url(request_base_url),
        }
        if messaging_service_sid:
            send_args["messaging_service_sid"] = messaging_service_sid
        else:
            send_args["from_"] = from_number

        message = await call_provider(
            "Twilio",
            self.telephony.twilio_client.messages.create,
            provider_errors=(TwilioException,),
            **send_args
        )
        status = message.status or "queued"

        thread_id = await self.upsert_thread(db, client_id, to_number, contact_id)
        sms = SmsMessage(
            thread_id=thread_id,
            client_id=client_id,
            direction=MessageDirection.OUTBOUND.value,
            from_number=from_number,
            to_number=to_number,
            body=body,
            status=status,
            provider="twilio",
            provider_message_sid=message.sid,
            created_by=principal_id
        )
        db.add(sms)
        db.add(AuditLog(
            actor_user_id=principal_id,
            client_id=client_id,
            action="sms_sent",
            details={"to": to_number, "provider_message_sid": message.sid}
        ))
        await db.commit()

        logger.info(f"✅ SMS {message.sid} sent for client {client_id}")
        return {
            "thread_id": thread_id,
            "message_id": sms.id,
            "provider_message_sid": message.sid,
            "status": status,
        }

    async def handle_inbound(self, db: AsyncSession, form: InboundSmsForm, params: Dict[str, Any]) -> Dict[str, Any]:
        if not await record_if_new(db, sms_inbound_key(form.MessageSid), params, "sms_inbound", "twilio"):
            return {"received": True}

        telephony_settings = await self.telephony.get_settings_by_number(db, form.To)
        if not telephony_settings:
            # Ledger entry stays; nothing else to write
            logger.warning(f"Inbound SMS {form.MessageSid} to unknown number {form.To}")
            await db.commit()
            return {"received": True}

        client_id = telephony_settings.client_id
        contact_id = await self.find_contact_id(db, client_id, form.From)
        thread_id = await self.upsert_thread(db, client_id, form.From, contact_id)

        db.add(SmsMessage(
            thread_id=thread_id,
            client_id=client_id,
            direction=MessageDirection.INBOUND.value,
            from_number=form.From,
            to_number=form.To,
            body=form.Body,
            status=form.MessageStatus or "received",
            provider="twilio",
            provider_message_sid=form.MessageSid
        ))
        db.add(AuditLog(
            client_id=client_id,
            action="sms_received",
            details={"from": form.From, "provider_message_sid": form.MessageSid}
        ))
        await db.commit()

        logger.info(f"📨 Inbound SMS {form.MessageSid} stored for client {client_id}")
        return {"received": True}

    async def handle_status(self, db: AsyncSession, form: SmsStatusForm, params: Dict[str, Any]) -> Dict[str, Any]:
        key = sms_status_key(form.MessageSid, form.MessageStatus)
        if not await record_if_new(db, key, params, "sms_status", "twilio"):
            return {"received": True}

        result = await db.execute(
            update(SmsMessage)
            .where(
                SmsMessage.provider_message_sid == form.MessageSid,
                or_(
                    SmsMessage.status.is_(None),
                    SmsMessage.status.notin_(statuses_not_superseded_by(form.MessageStatus))
                )
            )
            .values(
                status=form.MessageStatus,
                error_code=form.ErrorCode,
                error_message=form.ErrorMessage
            )
        )
        await db.commit()

        if result.rowcount == 0:
            logger.info(f"Status {form.MessageStatus} not applied to {form.MessageSid} (unknown or superseded)")
        return {"received": True}

    @staticmethod
    def validate_send_request(client_id, to_number, body):
        if not client_id or not to_number or not body:
            raise InvalidRequest("client_id, to_number, and body are required")


sms_service = SmsService(telephony_service)
