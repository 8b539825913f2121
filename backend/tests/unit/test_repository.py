import pytest
import uuid
from sqlalchemy import select, func

from app.db.repository import insert_or_ignore, upsert_by_natural_key
from app.models.models import ExternalEvent, SmsThread, Call
from app.services.idempotency_service import (
    record_if_new, sms_inbound_key, sms_status_key, stripe_event_key
)


class TestIdempotencyLedger:

    def test_keys_are_namespaced_by_provider(self):
        assert sms_inbound_key("SM1") == "twilio:sms_inbound:SM1"
        assert stripe_event_key("evt_1") == "stripe:event:evt_1"

    def test_status_key_distinguishes_transitions(self):
        assert sms_status_key("SM1", "sent") != sms_status_key("SM1", "delivered")

    @pytest.mark.asyncio
    async def test_first_delivery_is_new_and_repeat_is_not(self, db):
        key = stripe_event_key("evt_1")
        assert await record_if_new(db, key, {"id": "evt_1"}, "invoice.paid") is True
        await db.commit()

        assert await record_if_new(db, key, {"id": "evt_1"}, "invoice.paid") is False
        await db.commit()

        count = await db.scalar(select(func.count()).select_from(ExternalEvent))
        assert count == 1
        event = await db.get(ExternalEvent, key)
        assert event.source == "stripe"
        assert event.type == "invoice.paid"

    @pytest.mark.asyncio
    async def test_rollback_forgets_delivery(self, db):
        key = sms_inbound_key("SM-rollback")
        assert await record_if_new(db, key, {}, "sms_inbound", "twilio") is True
        await db.rollback()

        assert await record_if_new(db, key, {}, "sms_inbound", "twilio") is True
        await db.commit()


class TestNaturalKeyUpsert:

    @pytest.mark.asyncio
    async def test_insert_or_ignore_reports_insertion(self, db):
        values = {"id": "k1", "source": "twilio", "type": "t", "payload": None}
        assert await insert_or_ignore(db, ExternalEvent, values, ["id"]) is True
        assert await insert_or_ignore(db, ExternalEvent, values, ["id"]) is False

    @pytest.mark.asyncio
    async def test_repeated_upserts_converge_on_one_row(self, db, tenant):
        values = {
            "client_id": tenant.client_id,
            "provider_call_sid": "CA123",
            "direction": "inbound",
            "status": "ringing",
        }
        first = await upsert_by_natural_key(db, Call, values, ["provider_call_sid"])
        second = await upsert_by_natural_key(
            db, Call, {**values, "status": "in-progress"}, ["provider_call_sid"]
        )
        await db.commit()

        assert first == second
        call = await db.get(Call, first)
        assert call.status == "in-progress"
        count = await db.scalar(select(func.count()).select_from(Call))
        assert count == 1

    @pytest.mark.asyncio
    async def test_empty_update_columns_keeps_existing_row(self, db, tenant):
        contact_values = {"client_id": tenant.client_id, "phone": "+15557770000", "contact_id": None}
        first = await upsert_by_natural_key(
            db, SmsThread, contact_values, ["client_id", "phone"], update_columns=[]
        )
        second = await upsert_by_natural_key(
            db, SmsThread, {**contact_values, "id": uuid.uuid4()}, ["client_id", "phone"], update_columns=[]
        )
        await db.commit()

        assert first == second
        count = await db.scalar(select(func.count()).select_from(SmsThread))
        assert count == 1
