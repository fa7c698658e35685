from __future__ import annotations

import asyncio
import json
import threading
from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from fastapi import HTTPException

from gym_backend.app.booking_rules import DecisionReason, ResourceKind
from gym_backend.app.cascade import CascadeOutcome
from gym_backend.app.ledger import AdjustmentMode
from gym_backend.app.lifecycle import PlanChangeKind
from gym_backend.app.plans import PlanDraft, PlanService, PlanUpdate
from gym_backend.app.routes import entitlements as entitlements_routes
from gym_backend.app.routes import members as members_routes
from gym_backend.app.routes import memberships as memberships_routes
from gym_backend.app.routes import plans as plans_routes
from gym_backend.app.routes import provider as provider_routes
from gym_backend.app.schemas.entitlements import OpenGymCheckInRequest
from gym_backend.app.schemas.memberships import CreditAdjustmentRequest, PlanChangeRequest
from gym_backend.app.schemas.plans import SyncPricingRequest
from gym_backend.tests.fakes import build_membership, build_plan

BERLIN = ZoneInfo("Europe/Berlin")


class FakeRequest:
    def __init__(self, body: bytes) -> None:
        self._body = body

    async def body(self) -> bytes:
        return self._body


@pytest.fixture
def plan_service(plans, memberships, commands, cascade, invalidator) -> PlanService:
    return PlanService(plans=plans, memberships=memberships, commands=commands, cascade=cascade, invalidator=invalidator)


def test_can_book_returns_decision(monkeypatch, entitlements, memberships, usage, weekly_plan):
    memberships.add(
        build_membership("m-1", "user-1", weekly_plan, start_date=date(2024, 1, 1), end_date=date(2024, 12, 31))
    )
    usage.book("user-1", datetime(2024, 5, 14, 18, tzinfo=BERLIN))
    monkeypatch.setattr(entitlements_routes, "get_entitlement_service", lambda: entitlements)

    response = entitlements_routes.can_book(
        user_id="user-1",
        resource=ResourceKind.COURSE,
        on=datetime(2024, 5, 16, 10, tzinfo=BERLIN),
    )

    assert response.allowed is True
    assert response.remaining == 1
    assert response.used_in_period == 1
    assert response.model_dump(by_alias=True)["membershipId"] == "m-1"


def test_open_gym_check_in_debits_credit(monkeypatch, entitlements, memberships, credit_plan):
    memberships.add(build_membership("m-1", "user-1", credit_plan, credits=3))
    monkeypatch.setattr(entitlements_routes, "get_entitlement_service", lambda: entitlements)

    response = entitlements_routes.open_gym_check_in(OpenGymCheckInRequest(userId="user-1"), actor="desk-1")

    assert response.admitted is True
    assert response.credits_remaining == 2


def test_open_gym_check_in_denial_is_not_an_error(monkeypatch, entitlements):
    monkeypatch.setattr(entitlements_routes, "get_entitlement_service", lambda: entitlements)

    response = entitlements_routes.open_gym_check_in(OpenGymCheckInRequest(userId="nobody"), actor=None)

    assert response.admitted is False
    assert response.decision.reason == DecisionReason.NO_MEMBERSHIP


def test_credit_adjustment_reports_clamping(monkeypatch, ledger, memberships, credit_plan):
    memberships.add(build_membership("m-1", "user-1", credit_plan, credits=30))
    monkeypatch.setattr(memberships_routes, "get_credit_ledger", lambda: ledger)

    response = memberships_routes.adjust_credits(
        "m-1",
        CreditAdjustmentRequest(amount=100, mode=AdjustmentMode.SUBTRACT),
        actor="admin-1",
    )

    assert response.new_balance == 0
    assert response.clamped is True


def test_credit_adjustment_on_unknown_membership_is_404(monkeypatch, ledger):
    monkeypatch.setattr(memberships_routes, "get_credit_ledger", lambda: ledger)

    with pytest.raises(HTTPException) as excinfo:
        memberships_routes.adjust_credits(
            "ghost",
            CreditAdjustmentRequest(amount=1, mode=AdjustmentMode.ADD),
            actor="admin-1",
        )

    assert excinfo.value.status_code == 404
    assert excinfo.value.detail["error"] == "membership_not_found"


def test_insufficient_credits_map_to_conflict(monkeypatch, ledger, memberships, credit_plan):
    memberships.add(build_membership("m-1", "user-1", credit_plan, credits=1))
    monkeypatch.setattr(memberships_routes, "get_credit_ledger", lambda: ledger)

    with pytest.raises(HTTPException) as excinfo:
        memberships_routes.adjust_credits(
            "m-1",
            CreditAdjustmentRequest(amount=2, mode=AdjustmentMode.SUBTRACT, requireSufficient=True),
            actor="admin-1",
        )

    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["balance"] == 1


def test_cancellation_request_returns_membership(monkeypatch, lifecycle, memberships, plans, provider):
    plan = plans.save_plan(build_plan("monthly"))
    memberships.add(build_membership("m-1", "user-1", plan, stripe_subscription_id="sub_1"))
    monkeypatch.setattr(memberships_routes, "get_lifecycle_manager", lambda: lifecycle)

    response = memberships_routes.request_cancellation("m-1", actor="user-1")

    assert response.changed is True
    assert response.membership.cancellation_requested_at is not None
    assert provider.cancelled == [("sub_1", True)]


def test_cancellation_not_allowed_maps_to_conflict(monkeypatch, lifecycle, memberships, plans):
    plan = plans.save_plan(build_plan("locked", cancellation_allowed=False))
    memberships.add(build_membership("m-1", "user-1", plan))
    monkeypatch.setattr(memberships_routes, "get_lifecycle_manager", lambda: lifecycle)

    with pytest.raises(HTTPException) as excinfo:
        memberships_routes.request_cancellation("m-1", actor="user-1")

    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["error"] == "cancellation_not_allowed"


def test_plan_change_without_membership_is_404(monkeypatch, lifecycle, weekly_plan):
    monkeypatch.setattr(memberships_routes, "get_lifecycle_manager", lambda: lifecycle)

    with pytest.raises(HTTPException) as excinfo:
        memberships_routes.start_plan_change(
            PlanChangeRequest(userId="nobody", targetPlanId=weekly_plan.id, kind=PlanChangeKind.UPGRADE),
            actor="nobody",
        )

    assert excinfo.value.status_code == 404


def test_create_plan_route(monkeypatch, plan_service):
    monkeypatch.setattr(plans_routes, "get_plan_service", lambda: plan_service)

    response = plans_routes.create_plan(
        PlanDraft(name="Basic", booking_rules={"type": "unlimited"}, price=Decimal("19.00")),
        actor="admin-1",
    )

    dumped = response.model_dump(by_alias=True)
    assert dumped["name"] == "Basic"
    assert dumped["bookingRules"] == {"type": "unlimited"}
    assert response.warnings == []


def test_family_change_route_maps_to_conflict(monkeypatch, plan_service, memberships, weekly_plan):
    memberships.add(build_membership("m-1", "user-1", weekly_plan))
    monkeypatch.setattr(plans_routes, "get_plan_service", lambda: plan_service)

    with pytest.raises(HTTPException) as excinfo:
        plans_routes.update_plan(weekly_plan.id, PlanUpdate(booking_rules={"type": "unlimited"}), actor="admin-1")

    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["error"] == "booking_rule_family_change"


def test_delete_plan_route(monkeypatch, plan_service, plans):
    plans.save_plan(build_plan("doomed"))
    monkeypatch.setattr(plans_routes, "get_plan_service", lambda: plan_service)

    response = plans_routes.delete_plan("doomed", actor="admin-1")

    assert response.outcome == CascadeOutcome.SUCCESS
    assert response.affected_count == 0


def test_sync_pricing_route_uses_previous_price(monkeypatch, sync_adapter, plans, provider):
    plans.save_plan(
        build_plan(
            "gold",
            price=Decimal("25.00"),
            stripe_product_id="prod_gold",
            stripe_price_id="price_gold",
        )
    )
    monkeypatch.setattr(plans_routes, "get_provider_sync_adapter", lambda: sync_adapter)

    response = plans_routes.sync_plan_pricing(
        "gold",
        SyncPricingRequest(previousPrice=Decimal("20.00")),
        actor="admin-1",
    )

    assert response.price_changed is True
    assert provider.deactivated == ["price_gold"]


def test_delete_unknown_member_is_404(monkeypatch, cascade):
    monkeypatch.setattr(members_routes, "get_cascade_service", lambda: cascade)

    with pytest.raises(HTTPException) as excinfo:
        members_routes.delete_member("ghost", actor="admin-1")

    assert excinfo.value.status_code == 404


def test_webhook_route_reports_duplicates(monkeypatch, sync_adapter):
    monkeypatch.setattr(provider_routes, "get_provider_sync_adapter", lambda: sync_adapter)
    body = json.dumps({"id": "evt_1", "type": "customer.created", "data": {"object": {}}}).encode()

    first = asyncio.run(provider_routes.receive_webhook(FakeRequest(body), stripe_signature=None))
    second = asyncio.run(provider_routes.receive_webhook(FakeRequest(body), stripe_signature=None))

    assert first.duplicate is False
    assert second.duplicate is True


def test_malformed_webhook_is_400(monkeypatch, sync_adapter):
    monkeypatch.setattr(provider_routes, "get_provider_sync_adapter", lambda: sync_adapter)

    with pytest.raises(HTTPException) as excinfo:
        asyncio.run(provider_routes.receive_webhook(FakeRequest(b"nope"), stripe_signature=None))

    assert excinfo.value.status_code == 400


def test_webhook_is_handled_off_the_event_loop_thread(monkeypatch, sync_adapter):
    handled_on = []
    handle_webhook = sync_adapter.handle_webhook

    def recording_handle(payload, signature):
        handled_on.append(threading.get_ident())
        return handle_webhook(payload, signature)

    monkeypatch.setattr(sync_adapter, "handle_webhook", recording_handle)
    monkeypatch.setattr(provider_routes, "get_provider_sync_adapter", lambda: sync_adapter)
    body = json.dumps({"id": "evt_9", "type": "customer.created", "data": {"object": {}}}).encode()

    asyncio.run(provider_routes.receive_webhook(FakeRequest(body), stripe_signature=None))

    assert handled_on and handled_on[0] != threading.get_ident()
