import pytest
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from sqlalchemy import select, func
from twilio.base.exceptions import TwilioRestException

from app.core.exceptions import Unauthorized, InvalidRequest, NotFound, UpstreamFailure
from app.models.models import (
    Client, Contact, DoNotContact, ContactConsent, SmsThread, SmsMessage, AuditLog, ExternalEvent
)
from app.schemas.schemas import InboundSmsForm, SmsStatusForm
from app.services.sms_service import SmsService
from app.services.telephony_service import TelephonyService


@pytest.fixture
def twilio_client():
    client = MagicMock()
    client.messages.create.return_value = MagicMock(sid="SM123", status="queued")
    return client


@pytest.fixture
def sms(twilio_client):
    telephony = TelephonyService()
    telephony._twilio_client = twilio_client
    return SmsService(telephony)


@pytest.fixture
async def contact(db, tenant):
    contact = Contact(client_id=tenant.client_id, name="Pat Borrower", phone="+15556667777")
    db.add(contact)
    await db.commit()
    return contact


class TestSendSms:

    @pytest.mark.asyncio
    async def test_send_stores_thread_message_and_audit(self, sms, twilio_client, db, tenant, contact):
        result = await sms.send_sms(
            db, tenant.staff_id, tenant.client_id, contact.phone, "Your documents are ready",
            request_base_url="http://internal:8000/"
        )

        assert result["provider_message_sid"] == "SM123"
        assert result["status"] == "queued"
        kwargs = twilio_client.messages.create.call_args.kwargs
        assert kwargs["from_"] == tenant.phone_number
        assert kwargs["status_callback"] == "https://api.example.com/api/sms/webhook/status"

        thread = (await db.execute(select(SmsThread))).scalar_one()
        assert thread.contact_id == contact.id
        message = (await db.execute(select(SmsMessage))).scalar_one()
        assert message.direction == "outbound"
        assert message.created_by == tenant.staff_id
        audit = (await db.execute(select(AuditLog))).scalar_one()
        assert audit.action == "sms_sent"

    @pytest.mark.asyncio
    async def test_do_not_contact_vetoes_before_provider_call(self, sms, twilio_client, db, tenant, contact):
        db.add(DoNotContact(client_id=tenant.client_id, contact_id=contact.id, reason="requested"))
        await db.commit()

        with pytest.raises(Unauthorized):
            await sms.send_sms(db, tenant.staff_id, tenant.client_id, contact.phone, "hi", contact_id=contact.id)

        twilio_client.messages.create.assert_not_called()
        assert await db.scalar(select(func.count()).select_from(SmsMessage)) == 0

    @pytest.mark.asyncio
    async def test_veto_applies_when_contact_is_resolved_by_number(self, sms, twilio_client, db, tenant, contact):
        db.add(DoNotContact(client_id=tenant.client_id, contact_id=contact.id))
        await db.commit()

        with pytest.raises(Unauthorized):
            await sms.send_sms(db, tenant.staff_id, tenant.client_id, contact.phone, "hi")
        twilio_client.messages.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_veto_checks_destination_number_when_another_contact_is_named(
        self, sms, twilio_client, db, tenant, contact
    ):
        blocked = Contact(client_id=tenant.client_id, name="Lee Blocked", phone="+15557770000")
        db.add(blocked)
        await db.flush()
        db.add(DoNotContact(client_id=tenant.client_id, contact_id=blocked.id))
        await db.commit()

        with pytest.raises(Unauthorized) as exc_info:
            await sms.send_sms(db, tenant.staff_id, tenant.client_id, blocked.phone, "hi", contact_id=contact.id)
        assert exc_info.value.message == "Contact is on the do-not-contact list"
        twilio_client.messages.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_contact_from_another_client_is_rejected(self, sms, twilio_client, db, tenant):
        other_client = Client(name="Other Funding Co")
        db.add(other_client)
        await db.flush()
        foreign = Contact(client_id=other_client.id, name="Sam Elsewhere", phone="+15558889999")
        db.add(foreign)
        await db.commit()

        with pytest.raises(NotFound):
            await sms.send_sms(db, tenant.staff_id, tenant.client_id, foreign.phone, "hi", contact_id=foreign.id)
        twilio_client.messages.create.assert_not_called()
        assert await db.scalar(select(func.count()).select_from(SmsThread)) == 0

    @pytest.mark.asyncio
    async def test_latest_consent_wins(self, sms, twilio_client, db, tenant, contact):
        now = datetime.now(timezone.utc)
        db.add_all([
            ContactConsent(client_id=tenant.client_id, contact_id=contact.id, channel="sms",
                           status="opted_in", created_at=now - timedelta(days=2)),
            ContactConsent(client_id=tenant.client_id, contact_id=contact.id, channel="sms",
                           status="opted_out", created_at=now - timedelta(days=1)),
        ])
        await db.commit()

        with pytest.raises(Unauthorized) as exc_info:
            await sms.send_sms(db, tenant.staff_id, tenant.client_id, contact.phone, "hi", contact_id=contact.id)
        assert exc_info.value.message == "Contact has opted out of SMS"

        db.add(ContactConsent(client_id=tenant.client_id, contact_id=contact.id, channel="sms",
                              status="opted_in", created_at=now))
        await db.commit()
        await sms.send_sms(db, tenant.staff_id, tenant.client_id, contact.phone, "hi", contact_id=contact.id)
        twilio_client.messages.create.assert_called_once()

    @pytest.mark.asyncio
    async def test_provider_failure_writes_nothing(self, sms, twilio_client, db, tenant):
        twilio_client.messages.create.side_effect = TwilioRestException(400, "/Messages", "bad number")

        with pytest.raises(UpstreamFailure):
            await sms.send_sms(db, tenant.staff_id, tenant.client_id, "+15550000000", "hi")
        assert await db.scalar(select(func.count()).select_from(SmsMessage)) == 0

    def test_validate_send_request(self):
        with pytest.raises(InvalidRequest) as exc_info:
            SmsService.validate_send_request(uuid.uuid4(), "", "hello")
        assert exc_info.value.message == "client_id, to_number, and body are required"


class TestSmsWebhooks:

    def inbound(self, tenant, sid="SMin1"):
        return InboundSmsForm(MessageSid=sid, From="+15556667777", To=tenant.phone_number, Body="hello")

    @pytest.mark.asyncio
    async def test_inbound_is_stored_once(self, sms, db, tenant, contact):
        form = self.inbound(tenant)
        assert await sms.handle_inbound(db, form, {"MessageSid": "SMin1"}) == {"received": True}
        assert await sms.handle_inbound(db, form, {"MessageSid": "SMin1"}) == {"received": True}

        message = (await db.execute(select(SmsMessage))).scalar_one()
        assert message.direction == "inbound"
        assert message.client_id == tenant.client_id
        thread = (await db.execute(select(SmsThread))).scalar_one()
        assert thread.contact_id == contact.id
        audit = (await db.execute(select(AuditLog))).scalar_one()
        assert audit.action == "sms_received"

    @pytest.mark.asyncio
    async def test_inbound_to_unknown_number_is_ledgered_only(self, sms, db, tenant):
        form = InboundSmsForm(MessageSid="SMx", From="+15556667777", To="+19990000000")
        assert await sms.handle_inbound(db, form, {}) == {"received": True}
        assert await db.scalar(select(func.count()).select_from(SmsMessage)) == 0
        assert await db.scalar(select(func.count()).select_from(ExternalEvent)) == 1

    @pytest.mark.asyncio
    async def test_status_transitions_apply_once_each(self, sms, twilio_client, db, tenant):
        await sms.send_sms(db, tenant.staff_id, tenant.client_id, "+15550000000", "hi")

        await sms.handle_status(db, SmsStatusForm(MessageSid="SM123", MessageStatus="sent"), {})
        await sms.handle_status(db, SmsStatusForm(
            MessageSid="SM123", MessageStatus="undelivered", ErrorCode="30003", ErrorMessage="Unreachable"
        ), {})
        await sms.handle_status(db, SmsStatusForm(MessageSid="SM123", MessageStatus="sent"), {})

        message = (await db.execute(select(SmsMessage))).scalar_one()
        await db.refresh(message)
        assert message.status == "undelivered"
        assert message.error_code == "30003"
        assert await db.scalar(select(func.count()).select_from(ExternalEvent)) == 2

    @pytest.mark.asyncio
    async def test_late_status_does_not_regress_final_status(self, sms, twilio_client, db, tenant):
        await sms.send_sms(db, tenant.staff_id, tenant.client_id, "+15550000000", "hi")

        await sms.handle_status(db, SmsStatusForm(MessageSid="SM123", MessageStatus="delivered"), {})
        await sms.handle_status(db, SmsStatusForm(MessageSid="SM123", MessageStatus="sent"), {})
        await sms.handle_status(db, SmsStatusForm(MessageSid="SM123", MessageStatus="queued"), {})

        message = (await db.execute(select(SmsMessage))).scalar_one()
        await db.refresh(message)
        assert message.status == "delivered"
        assert await db.scalar(select(func.count()).select_from(ExternalEvent)) == 3

    @pytest.mark.asyncio
    async def test_status_for_unknown_message_is_acknowledged(self, sms, db):
        result = await sms.handle_status(db, SmsStatusForm(MessageSid="SMnope", MessageStatus="delivered"), {})
        assert result == {"received": True}
