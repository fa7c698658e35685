"""Fixtures wiring the engine services to in-memory collaborators."""
from __future__ import annotations

from decimal import Decimal

import pytest

from gym_backend.app.booking_rules import CreditRules, LimitedRules
from gym_backend.app.cascade import CascadeService
from gym_backend.app.entitlements import EntitlementService
from gym_backend.app.ledger import CreditLedger
from gym_backend.app.lifecycle import MembershipLifecycleManager
from gym_backend.app.memberships import MembershipPlan
from gym_backend.app.provider_sync import ProviderCommands, ProviderSyncAdapter
from gym_backend.tests.fakes import (
    FakeIdentityProvider,
    FakeMemberDirectory,
    FakePaymentProvider,
    InMemoryBookingUsage,
    InMemoryMembershipRepository,
    InMemoryPlanRepository,
    InMemoryProcessedEvents,
    RecordingEventLogger,
    RecordingInvalidator,
    build_plan,
)


@pytest.fixture
def plans() -> InMemoryPlanRepository:
    return InMemoryPlanRepository()


@pytest.fixture
def memberships() -> InMemoryMembershipRepository:
    return InMemoryMembershipRepository()


@pytest.fixture
def usage() -> InMemoryBookingUsage:
    return InMemoryBookingUsage()


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def invalidator() -> RecordingInvalidator:
    return RecordingInvalidator()


@pytest.fixture
def directory() -> FakeMemberDirectory:
    return FakeMemberDirectory()


@pytest.fixture
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def commands(provider, plans, event_logger, invalidator) -> ProviderCommands:
    return ProviderCommands(
        provider=provider,
        plans=plans,
        currency="eur",
        event_logger=event_logger,
        invalidator=invalidator,
    )


@pytest.fixture
def ledger(memberships, plans, event_logger) -> CreditLedger:
    return CreditLedger(memberships=memberships, plans=plans, event_logger=event_logger, max_retries=3)


@pytest.fixture
def lifecycle(memberships, plans, commands, event_logger) -> MembershipLifecycleManager:
    return MembershipLifecycleManager(
        memberships=memberships,
        plans=plans,
        provider=commands,
        event_logger=event_logger,
    )


@pytest.fixture
def sync_adapter(commands, lifecycle, ledger, memberships, event_logger) -> ProviderSyncAdapter:
    return ProviderSyncAdapter(
        commands=commands,
        lifecycle=lifecycle,
        ledger=ledger,
        memberships=memberships,
        events=InMemoryProcessedEvents(),
        event_logger=event_logger,
    )


@pytest.fixture
def cascade(plans, memberships, lifecycle, directory, commands, identity, invalidator, event_logger) -> CascadeService:
    return CascadeService(
        plans=plans,
        memberships=memberships,
        lifecycle=lifecycle,
        directory=directory,
        provider=commands,
        identity=identity,
        invalidator=invalidator,
        event_logger=event_logger,
    )


@pytest.fixture
def entitlements(memberships, plans, usage, ledger) -> EntitlementService:
    return EntitlementService(memberships, plans, usage, ledger, gym_timezone="Europe/Berlin")


@pytest.fixture
def credit_plan(plans) -> MembershipPlan:
    return plans.save_plan(
        build_plan("ten-pack", CreditRules(limit={"count": 10}), payment_frequency="one_time", price=Decimal("90"))
    )


@pytest.fixture
def weekly_plan(plans) -> MembershipPlan:
    return plans.save_plan(build_plan("twice-weekly", LimitedRules(limit={"count": 2, "period": "week"})))
