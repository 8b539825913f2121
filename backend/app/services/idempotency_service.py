# backend/app/services/idempotency_service.py
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.repository import insert_or_ignore
from app.models.models import ExternalEvent

logger = logging.getLogger(__name__)


def sms_inbound_key(message_sid: str) -> str:
    return f"twilio:sms_inbound:{message_sid}"


def sms_status_key(message_sid: str, status: str) -> str:
    # Each distinct status transition is its own delivery
    return f"twilio:sms_status:{message_sid}:{status}"


def stripe_event_key(event_id: str) -> str:
    return f"stripe:event:{event_id}"


async def record_if_new(
    db: AsyncSession,
    key: str,
    payload: Optional[Dict[str, Any]],
    event_type: Optional[str],
    source: Optional[str] = None
) -> bool:
    """Record a webhook delivery in the external events ledger.

    Returns True the first time a key is seen and False for every repeat.
    The insert is a single conditional statement, so two concurrent
    deliveries of the same key cannot both observe True. The caller
    commits; a rollback forgets the delivery so the provider's retry is
    processed again.
    """
    source = source or key.split(":", 1)[0]
    inserted = await insert_or_ignore(
        db,
        ExternalEvent,
        {"id": key, "source": source, "type": event_type, "payload": payload},
        conflict_columns=["id"]
    )
    if not inserted:
        logger.info(f"🔁 Duplicate delivery ignored: {key}")
    return inserted
