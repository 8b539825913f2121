# backend/app/services/entitlement_service.py
import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.auth import AccessResolver
from app.models.models import Role
from app.models.stripe_models import (
    BillingSubscription,
    BillingOneTimePayment,
    ENTITLED_SUBSCRIPTION_STATUSES,
    ENTITLED_PAYMENT_STATUSES
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Entitlement:
    is_subscribed: bool
    has_one_time: bool
    has_access: bool


def evaluate_access(
    is_internal_staff: bool,
    subscription_statuses: Iterable[str],
    payment_statuses: Iterable[str]
) -> Entitlement:
    """Pure entitlement rule: staff override, live subscription, or a paid one-time payment."""
    is_subscribed = any(s in ENTITLED_SUBSCRIPTION_STATUSES for s in subscription_statuses)
    has_one_time = any(s in ENTITLED_PAYMENT_STATUSES for s in payment_statuses)
    return Entitlement(
        is_subscribed=is_subscribed,
        has_one_time=has_one_time,
        has_access=is_internal_staff or is_subscribed or has_one_time
    )


class EntitlementService:
    def __init__(self, access_resolver: AccessResolver):
        self.access_resolver = access_resolver

    async def is_internal_staff(self, principal_id: UUID, client_id: UUID) -> bool:
        role = await self.access_resolver.get_role(principal_id)
        if not role.is_internal:
            return False
        if role == Role.ADMIN:
            return True
        return await self.access_resolver.has_membership(principal_id, client_id)

    async def get_entitlement(
        self,
        db: AsyncSession,
        principal_id: UUID,
        client_id: UUID,
        authorized_role: Optional[Role] = None
    ) -> Entitlement:
        if authorized_role is not None:
            # Tenant access already verified, so an internal role is staff for this tenant
            internal_staff = authorized_role.is_internal
        else:
            internal_staff = await self.is_internal_staff(principal_id, client_id)

        if internal_staff:
            # Staff never need billing state
            return evaluate_access(True, [], [])

        subs = await db.execute(
            select(BillingSubscription.status).where(BillingSubscription.client_id == client_id)
        )
        payments = await db.execute(
            select(BillingOneTimePayment.status).where(BillingOneTimePayment.client_id == client_id)
        )
        return evaluate_access(False, subs.scalars().all(), payments.scalars().all())
