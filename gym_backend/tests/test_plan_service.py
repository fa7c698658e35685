from __future__ import annotations

from decimal import Decimal

import pytest

from gym_backend.app.booking_rules import BookingRuleFamily, CreditRules, LimitedRules
from gym_backend.app.cascade import CascadeOutcome
from gym_backend.app.errors import BookingRuleFamilyChangeError, PlanNotFoundError
from gym_backend.app.memberships import MembershipStatus, PaymentFrequency
from gym_backend.app.plans import PlanDraft, PlanService, PlanUpdate
from gym_backend.tests.fakes import build_membership, build_plan


@pytest.fixture
def service(plans, memberships, commands, cascade, invalidator) -> PlanService:
    return PlanService(
        plans=plans,
        memberships=memberships,
        commands=commands,
        cascade=cascade,
        invalidator=invalidator,
    )


def _synced_plan(plans, plan_id="gold", **overrides):
    fields = {
        "stripe_product_id": "prod_gold",
        "stripe_price_id": "price_gold",
        "synced_price": Decimal("20.00"),
    }
    fields.update(overrides)
    return plans.save_plan(build_plan(plan_id, **fields))


def test_create_plan_creates_product_and_price(service, provider):
    draft = PlanDraft(
        name="Ten Pack",
        booking_rules={"type": "credits", "limit": {"count": 10}},
        price=Decimal("89.90"),
        payment_frequency=PaymentFrequency.ONE_TIME,
    )

    result = service.create_plan(draft, actor="admin-1")

    assert result.plan.family == BookingRuleFamily.CREDITS
    assert result.plan.stripe_product_id == "prod_1"
    assert result.plan.stripe_price_id == "price_2"
    assert result.plan.synced_price == Decimal("89.90")
    assert result.pricing.product_created is True
    assert ("create_price", ("prod_1", 8990, "eur", None)) in provider.calls
    assert result.warnings == []


def test_create_plan_keeps_plan_when_provider_fails(service, plans, provider):
    provider.fail["create_product"].add("*")

    result = service.create_plan(PlanDraft(name="Basic", booking_rules={"type": "unlimited"}))

    assert result.pricing is None
    assert result.warnings[0].startswith("provider_sync_failed:")
    assert plans.plans[result.plan.id].stripe_product_id is None


def test_price_change_creates_new_price_and_deactivates_old(service, provider, invalidator):
    plan = _synced_plan(service.plans)

    result = service.update_plan(plan.id, PlanUpdate(price=Decimal("25.00")))

    assert result.pricing.price_changed is True
    assert result.pricing.previous_price_id == "price_gold"
    assert result.plan.stripe_price_id != "price_gold"
    assert provider.deactivated == ["price_gold"]
    assert plan.id in invalidator.plans


def test_name_change_updates_product_without_new_price(service, provider):
    plan = _synced_plan(service.plans)

    result = service.update_plan(plan.id, PlanUpdate(name="Gold Plus"))

    assert result.pricing.price_changed is False
    assert ("update_product", ("prod_gold", "Gold Plus")) in provider.calls
    assert not [call for call in provider.calls if call[0] == "create_price"]


def test_color_change_skips_provider(service, provider):
    plan = _synced_plan(service.plans)

    result = service.update_plan(plan.id, PlanUpdate(color="#ff0000"))

    assert result.plan.color == "#ff0000"
    assert result.pricing is None
    assert provider.calls == []


def test_empty_update_returns_current_plan(service, invalidator):
    plan = _synced_plan(service.plans)

    result = service.update_plan(plan.id, PlanUpdate())

    assert result.plan == plan
    assert invalidator.plans == []


def test_family_change_with_live_memberships_is_rejected(service, memberships):
    plan = _synced_plan(service.plans)
    memberships.add(build_membership("m-1", "user-1", plan))

    with pytest.raises(BookingRuleFamilyChangeError) as excinfo:
        service.update_plan(plan.id, PlanUpdate(booking_rules=CreditRules()))

    assert excinfo.value.detail["live_memberships"] == 1
    assert service.plans.get_plan(plan.id).family == BookingRuleFamily.UNLIMITED


def test_family_change_without_live_memberships_is_allowed(service, memberships):
    plan = _synced_plan(service.plans)
    memberships.add(build_membership("m-1", "user-1", plan, status=MembershipStatus.CANCELLED))

    result = service.update_plan(plan.id, PlanUpdate(booking_rules=CreditRules()))

    assert result.plan.family == BookingRuleFamily.CREDITS


def test_limit_change_within_family_is_allowed(service, memberships, weekly_plan):
    memberships.add(build_membership("m-1", "user-1", weekly_plan))

    result = service.update_plan(
        weekly_plan.id,
        PlanUpdate(booking_rules=LimitedRules(limit={"count": 3, "period": "week"})),
    )

    assert result.plan.booking_rules.limit.count == 3


def test_update_unknown_plan_raises(service):
    with pytest.raises(PlanNotFoundError):
        service.update_plan("ghost", PlanUpdate(name="x"))


def test_delete_plan_runs_cascade(service, plans):
    plan = _synced_plan(plans)

    result = service.delete_plan(plan.id, actor="admin-1")

    assert result.outcome == CascadeOutcome.SUCCESS
    assert plans.get_plan(plan.id) is None


def test_delete_plan_without_cascade_is_a_wiring_error(plans, memberships):
    with pytest.raises(RuntimeError):
        PlanService(plans=plans, memberships=memberships).delete_plan("gold")
