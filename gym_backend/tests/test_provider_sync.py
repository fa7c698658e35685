from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from gym_backend.app.audit import AuditEventType
from gym_backend.app.errors import ConcurrencyConflictError, PlanNotFoundError, ProviderError
from gym_backend.app.memberships import CancellationReason, MembershipStatus
from gym_backend.app.provider_sync import ProviderEvent
from gym_backend.tests.fakes import build_membership, build_plan, utc_today


def _event(event_id: str, event_type: str, **data) -> ProviderEvent:
    return ProviderEvent(event_id=event_id, event_type=event_type, data=data)


@pytest.fixture
def synced_plan(plans):
    return plans.save_plan(
        build_plan(
            "monthly",
            price=Decimal("20.00"),
            stripe_product_id="prod_existing",
            stripe_price_id="price_old",
            synced_price=Decimal("20.00"),
        )
    )


# ----------------------------------------------------------------------
# Outbound pricing sync
# ----------------------------------------------------------------------
def test_price_change_creates_new_price_and_deactivates_old(commands, plans, provider, invalidator, synced_plan):
    plans.save_plan(synced_plan.model_copy(update={"price": Decimal("25.00")}))

    result = commands.sync_plan_pricing(synced_plan.id)

    stored = plans.get_plan(synced_plan.id)
    assert result.price_changed is True
    assert result.previous_price_id == "price_old"
    assert stored.stripe_price_id == result.price_id
    assert stored.stripe_price_id != "price_old"
    assert stored.synced_price == Decimal("25.00")
    assert provider.deactivated == ["price_old"]
    assert ("create_price", ("prod_existing", 2500, "eur", "month")) in provider.calls
    assert invalidator.plans == [synced_plan.id]


def test_unchanged_price_only_updates_product(commands, provider, synced_plan):
    result = commands.sync_plan_pricing(synced_plan.id)

    assert result.price_changed is False
    assert result.price_id == "price_old"
    assert not [call for call in provider.calls if call[0] == "create_price"]
    assert ("update_product", ("prod_existing", synced_plan.name)) in provider.calls


def test_explicit_previous_price_triggers_new_price(commands, plans, provider):
    plans.save_plan(
        build_plan("legacy", price=Decimal("25.00"), stripe_product_id="prod_l", stripe_price_id="price_l")
    )

    result = commands.sync_plan_pricing("legacy", Decimal("20.00"))

    assert result.price_changed is True
    assert provider.deactivated == ["price_l"]


def test_deactivation_failure_is_only_a_warning(commands, plans, provider, synced_plan):
    plans.save_plan(synced_plan.model_copy(update={"price": Decimal("25.00")}))
    provider.fail["deactivate_price"].add("price_old")

    result = commands.sync_plan_pricing(synced_plan.id)

    assert result.warnings == ["deactivate_price_failed:price_old"]
    assert plans.get_plan(synced_plan.id).stripe_price_id == result.price_id


def test_plan_without_product_gets_product_and_price(commands, plans, provider, event_logger):
    plans.save_plan(build_plan("fresh", payment_frequency="one_time", price=Decimal("12.50")))

    result = commands.sync_plan_pricing("fresh")

    assert result.product_created is True
    assert result.price_changed is True
    assert ("create_price", (result.product_id, 1250, "eur", None)) in provider.calls
    assert event_logger.of_type(AuditEventType.PLAN_PRICING_SYNCED)


def test_price_creation_failure_propagates(commands, plans, provider, synced_plan):
    plans.save_plan(synced_plan.model_copy(update={"price": Decimal("25.00")}))
    provider.fail["create_price"].add("prod_existing")

    with pytest.raises(ProviderError):
        commands.sync_plan_pricing(synced_plan.id)

    assert plans.get_plan(synced_plan.id).stripe_price_id == "price_old"


def test_sync_unknown_plan(commands):
    with pytest.raises(PlanNotFoundError):
        commands.sync_plan_pricing("missing")


def test_cancel_subscriptions_collects_failures(commands, provider, synced_plan):
    members = [
        build_membership(f"m-{index}", f"user-{index}", synced_plan, stripe_subscription_id=f"sub_{index}")
        for index in range(3)
    ]
    provider.fail["cancel_subscription"].add("sub_1")

    result = commands.cancel_subscriptions(members)

    assert result.succeeded == ["m-0", "m-2"]
    assert [error.reference for error in result.errors] == ["sub_1"]
    assert result.attempted == 3


# ----------------------------------------------------------------------
# Inbound events
# ----------------------------------------------------------------------
def test_subscription_deleted_replay_is_idempotent(sync_adapter, memberships, event_logger, synced_plan):
    memberships.add(build_membership("m-1", "user-1", synced_plan, stripe_subscription_id="sub_1"))
    event = _event("evt_1", "customer.subscription.deleted", id="sub_1", status="canceled")

    first = sync_adapter.handle_event(event)
    second = sync_adapter.handle_event(event)

    assert first.action == "cancelled"
    assert second.duplicate is True
    stored = memberships.get_membership("m-1")
    assert stored.status == MembershipStatus.CANCELLED
    assert stored.membership_data.cancelled_reason == CancellationReason.PROVIDER_CANCELLED.value
    assert len(event_logger.of_type(AuditEventType.MEMBERSHIP_CANCELLED)) == 1


def test_redelivered_cancellation_with_new_event_id_converges(sync_adapter, memberships, event_logger, synced_plan):
    memberships.add(build_membership("m-1", "user-1", synced_plan, stripe_subscription_id="sub_1"))

    sync_adapter.handle_event(_event("evt_1", "customer.subscription.deleted", id="sub_1"))
    replay = sync_adapter.handle_event(_event("evt_2", "customer.subscription.updated", id="sub_1", status="canceled"))

    assert replay.action == "noop"
    assert len(event_logger.of_type(AuditEventType.MEMBERSHIP_CANCELLED)) == 1


def test_requested_cancellation_ends_with_period_ended(sync_adapter, lifecycle, memberships, synced_plan):
    memberships.add(build_membership("m-1", "user-1", synced_plan, stripe_subscription_id="sub_1"))
    lifecycle.request_cancellation("m-1")

    sync_adapter.handle_event(_event("evt_1", "customer.subscription.deleted", id="sub_1"))

    stored = memberships.get_membership("m-1")
    assert stored.membership_data.cancelled_reason == CancellationReason.PERIOD_ENDED.value


def test_checkout_completed_creates_membership_once(sync_adapter, memberships, synced_plan):
    session = {
        "id": "cs_1",
        "customer": "cus_1",
        "subscription": "sub_9",
        "metadata": {"purchase_type": "membership", "user_id": "user-1", "plan_id": synced_plan.id},
    }

    created = sync_adapter.handle_event(_event("evt_1", "checkout.session.completed", **session))
    replay = sync_adapter.handle_event(_event("evt_2", "checkout.session.completed", **session))

    assert created.action == "membership_created"
    assert replay.action == "noop"
    assert replay.membership_ids == created.membership_ids
    [membership] = memberships.list_by_subscription("sub_9")
    assert membership.status == MembershipStatus.ACTIVE
    assert membership.stripe_customer_id == "cus_1"


def test_checkout_completed_confirms_plan_change(sync_adapter, lifecycle, memberships, plans, synced_plan):
    memberships.add(build_membership("m-old", "user-1", synced_plan, stripe_subscription_id="sub_old"))
    target = plans.save_plan(build_plan("premium", price=Decimal("40")))
    started = lifecycle.start_plan_change("user-1", target.id, "upgrade")

    outcome = sync_adapter.handle_event(
        _event(
            "evt_1",
            "checkout.session.completed",
            id="cs_1",
            customer="cus_1",
            subscription="sub_new",
            metadata={"purchase_type": "membership_upgrade", "membership_id": started.membership.id},
        )
    )

    assert outcome.action == "plan_change_confirmed"
    assert memberships.get_membership(started.membership.id).status == MembershipStatus.ACTIVE
    assert memberships.get_membership("m-old").status == MembershipStatus.CANCELLED


def test_paid_but_superseded_plan_change_is_reported(sync_adapter, lifecycle, memberships, plans, synced_plan):
    memberships.add(build_membership("m-old", "user-1", synced_plan))
    first_target = plans.save_plan(build_plan("premium", price=Decimal("40")))
    second_target = plans.save_plan(build_plan("basic", price=Decimal("10")))
    first = lifecycle.start_plan_change("user-1", first_target.id, "upgrade")
    lifecycle.start_plan_change("user-1", second_target.id, "downgrade")

    outcome = sync_adapter.handle_event(
        _event(
            "evt_1",
            "checkout.session.completed",
            metadata={"purchase_type": "plan_change", "membership_id": first.membership.id},
        )
    )

    assert outcome.handled is False
    assert outcome.action == "plan_change_superseded"
    assert memberships.get_membership("m-old").status == MembershipStatus.ACTIVE


def test_credit_topup_adds_plan_grant(sync_adapter, memberships, credit_plan):
    memberships.add(build_membership("m-1", "user-1", credit_plan, credits=2))

    outcome = sync_adapter.handle_event(
        _event(
            "evt_1",
            "checkout.session.completed",
            id="cs_topup",
            metadata={"purchase_type": "credit_topup", "user_id": "user-1"},
        )
    )

    assert outcome.action == "credits_added"
    assert memberships.get_membership("m-1").remaining_credits == 12


def test_credit_topup_replay_past_lost_claim_adds_once(sync_adapter, memberships, credit_plan):
    memberships.add(build_membership("m-1", "user-1", credit_plan, credits=2))
    event = _event(
        "evt_1",
        "checkout.session.completed",
        id="cs_topup",
        metadata={"purchase_type": "credit_topup", "user_id": "user-1"},
    )

    sync_adapter.handle_event(event)
    sync_adapter.events.release_event("evt_1")
    replay = sync_adapter.handle_event(event)

    assert replay.duplicate is False
    assert replay.action == "noop"
    assert memberships.get_membership("m-1").remaining_credits == 12
    assert len(memberships.list_credit_adjustments("m-1")) == 1


def test_credit_topup_redelivered_with_new_event_id_adds_once(sync_adapter, memberships, credit_plan):
    memberships.add(build_membership("m-1", "user-1", credit_plan, credits=2))
    session = {"id": "cs_topup", "metadata": {"purchase_type": "credit_topup", "membership_id": "m-1", "credits": "5"}}

    sync_adapter.handle_event(_event("evt_1", "checkout.session.completed", **session))
    sync_adapter.handle_event(_event("evt_2", "checkout.session.completed", **session))

    assert memberships.get_membership("m-1").remaining_credits == 7


def test_failed_handler_releases_event_for_redelivery(sync_adapter, memberships, credit_plan):
    memberships.add(build_membership("m-1", "user-1", credit_plan, credits=2))
    event = _event(
        "evt_1",
        "checkout.session.completed",
        id="cs_topup",
        metadata={"purchase_type": "credit_topup", "user_id": "user-1"},
    )
    memberships.steal_next_writes = 4

    with pytest.raises(ConcurrencyConflictError):
        sync_adapter.handle_event(event)
    assert not sync_adapter.events.has_event("evt_1")

    redelivered = sync_adapter.handle_event(event)

    assert redelivered.action == "credits_added"
    assert sync_adapter.events.has_event("evt_1")
    assert memberships.get_membership("m-1").remaining_credits == 12


def test_one_time_checkout_replay_past_lost_claim_creates_one_membership(sync_adapter, memberships, synced_plan):
    event = _event(
        "evt_1",
        "checkout.session.completed",
        id="cs_once",
        customer="cus_1",
        metadata={"purchase_type": "membership", "user_id": "user-1", "plan_id": synced_plan.id},
    )

    created = sync_adapter.handle_event(event)
    sync_adapter.events.release_event("evt_1")
    replay = sync_adapter.handle_event(event)

    assert created.action == "membership_created"
    assert replay.action == "noop"
    assert replay.membership_ids == created.membership_ids
    [membership] = memberships.list_for_user("user-1")
    assert membership.stripe_checkout_session_id == "cs_once"
    assert membership.status != MembershipStatus.CANCELLED


def test_renewal_invoice_extends_end_date(sync_adapter, memberships, synced_plan):
    memberships.add(build_membership("m-1", "user-1", synced_plan, stripe_subscription_id="sub_1"))
    period_end = datetime.combine(utc_today() + timedelta(days=120), datetime.min.time(), tzinfo=timezone.utc)
    invoice = {
        "id": "in_1",
        "subscription": "sub_1",
        "billing_reason": "subscription_cycle",
        "lines": {"data": [{"period": {"end": int(period_end.timestamp())}}]},
    }

    outcome = sync_adapter.handle_event(_event("evt_1", "invoice.payment_succeeded", **invoice))

    assert outcome.action == "payment_applied"
    assert memberships.get_membership("m-1").end_date == period_end.date()


def test_payment_failure_is_audited(sync_adapter, memberships, event_logger, synced_plan):
    memberships.add(build_membership("m-1", "user-1", synced_plan, stripe_subscription_id="sub_1"))

    sync_adapter.handle_event(_event("evt_1", "invoice.payment_failed", id="in_1", subscription="sub_1", amount_due=2000))

    [event] = event_logger.of_type(AuditEventType.PAYMENT_FAILED)
    assert event.metadata["invoice_id"] == "in_1"
    assert memberships.get_membership("m-1").status == MembershipStatus.ACTIVE


def test_unknown_event_types_are_ignored(sync_adapter):
    outcome = sync_adapter.handle_event(_event("evt_1", "customer.created", id="cus_1"))

    assert outcome.handled is False


def test_handle_webhook_decodes_payload(sync_adapter, memberships, synced_plan):
    memberships.add(build_membership("m-1", "user-1", synced_plan, stripe_subscription_id="sub_1"))
    body = json.dumps(
        {"id": "evt_9", "type": "customer.subscription.deleted", "data": {"object": {"id": "sub_1"}}}
    ).encode("utf-8")

    outcome = sync_adapter.handle_webhook(body, None)

    assert outcome.event_id == "evt_9"
    assert outcome.membership_ids == ["m-1"]
