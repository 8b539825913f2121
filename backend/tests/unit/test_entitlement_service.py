import pytest
import uuid
from unittest.mock import patch

from app.models.models import Role
from app.models.stripe_models import BillingSubscription, BillingOneTimePayment
from app.services.entitlement_service import EntitlementService, evaluate_access


class TestEvaluateAccess:

    @pytest.mark.parametrize("staff,subs,payments,subscribed,one_time,access", [
        (False, [], [], False, False, False),
        (False, ["active"], [], True, False, True),
        (False, ["trialing"], [], True, False, True),
        (False, ["past_due", "canceled"], [], False, False, False),
        (False, [], ["succeeded"], False, True, True),
        (False, [], ["paid"], False, True, True),
        (False, [], ["requires_payment_method"], False, False, False),
        (True, [], [], False, False, True),
        (False, ["canceled", "active"], ["processing"], True, False, True),
    ])
    def test_rule(self, staff, subs, payments, subscribed, one_time, access):
        result = evaluate_access(staff, subs, payments)
        assert result.is_subscribed is subscribed
        assert result.has_one_time is one_time
        assert result.has_access is access


class TestEntitlementService:

    @pytest.mark.asyncio
    async def test_client_without_billing_has_no_access(self, db, resolver, tenant):
        entitlement = await EntitlementService(resolver).get_entitlement(
            db, tenant.client_user_id, tenant.client_id
        )
        assert entitlement.has_access is False

    @pytest.mark.asyncio
    async def test_active_subscription_grants_access(self, db, resolver, tenant):
        db.add(BillingSubscription(
            client_id=tenant.client_id,
            stripe_subscription_id="sub_1",
            status="active"
        ))
        await db.commit()

        entitlement = await EntitlementService(resolver).get_entitlement(
            db, tenant.client_user_id, tenant.client_id
        )
        assert entitlement.is_subscribed is True
        assert entitlement.has_access is True

    @pytest.mark.asyncio
    async def test_paid_one_time_payment_grants_access(self, db, resolver, tenant):
        db.add(BillingOneTimePayment(
            client_id=tenant.client_id,
            stripe_payment_intent_id="pi_1",
            status="succeeded",
            amount=5000,
            currency="usd"
        ))
        await db.commit()

        entitlement = await EntitlementService(resolver).get_entitlement(
            db, tenant.client_user_id, tenant.client_id
        )
        assert entitlement.has_one_time is True
        assert entitlement.is_subscribed is False
        assert entitlement.has_access is True

    @pytest.mark.asyncio
    async def test_assigned_staff_and_admin_are_entitled(self, db, resolver, tenant):
        service = EntitlementService(resolver)
        assert (await service.get_entitlement(db, tenant.staff_id, tenant.client_id)).has_access
        assert (await service.get_entitlement(db, tenant.admin_id, tenant.client_id)).has_access

    @pytest.mark.asyncio
    async def test_unassigned_staff_is_not_staff_override(self, resolver, tenant):
        service = EntitlementService(resolver)
        assert await service.is_internal_staff(tenant.outsider_id, tenant.client_id) is False
        assert await service.is_internal_staff(tenant.client_user_id, tenant.client_id) is False
        assert await service.is_internal_staff(uuid.uuid4(), tenant.client_id) is False

    @pytest.mark.asyncio
    async def test_authorized_role_skips_second_access_lookup(self, db, resolver, tenant):
        service = EntitlementService(resolver)
        with patch.object(resolver, "get_role", wraps=resolver.get_role) as get_role, \
                patch.object(resolver, "has_membership", wraps=resolver.has_membership) as has_membership:
            staff = await service.get_entitlement(db, tenant.staff_id, tenant.client_id, authorized_role=Role.USER)
            client_user = await service.get_entitlement(
                db, tenant.client_user_id, tenant.client_id, authorized_role=Role.CLIENT
            )
        assert staff.has_access is True
        assert client_user.has_access is False
        get_role.assert_not_called()
        has_membership.assert_not_called()
