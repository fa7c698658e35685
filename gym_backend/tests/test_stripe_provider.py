from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
import stripe

from gym_backend.app.errors import ProviderError, ValidationError
from gym_backend.app.provider_sync.stripe_provider import StripePaymentProvider, decode_event


class Recorder:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def __call__(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def provider() -> StripePaymentProvider:
    return StripePaymentProvider(api_key="sk_test_123", webhook_secret="whsec_test")


def test_create_product_passes_metadata_and_key(provider, monkeypatch):
    create = Recorder(result=SimpleNamespace(id="prod_abc"))
    monkeypatch.setattr(stripe.Product, "create", create)

    product_id = provider.create_product(name="Gold", description=None, metadata={"plan_id": "gold"})

    assert product_id == "prod_abc"
    _, kwargs = create.calls[0]
    assert kwargs == {"api_key": "sk_test_123", "name": "Gold", "metadata": {"plan_id": "gold"}}


def test_recurring_price_sets_interval(provider, monkeypatch):
    create = Recorder(result=SimpleNamespace(id="price_abc"))
    monkeypatch.setattr(stripe.Price, "create", create)

    provider.create_price(product_id="prod_abc", unit_amount=2500, currency="eur", interval="month", metadata={})

    _, kwargs = create.calls[0]
    assert kwargs["recurring"] == {"interval": "month"}
    assert kwargs["unit_amount"] == 2500


def test_one_time_price_has_no_recurring_block(provider, monkeypatch):
    create = Recorder(result=SimpleNamespace(id="price_abc"))
    monkeypatch.setattr(stripe.Price, "create", create)

    provider.create_price(product_id="prod_abc", unit_amount=9000, currency="eur", interval=None, metadata={})

    assert "recurring" not in create.calls[0][1]


def test_stripe_errors_become_provider_errors(provider, monkeypatch):
    monkeypatch.setattr(stripe.Price, "modify", Recorder(error=stripe.APIConnectionError("timed out")))

    with pytest.raises(ProviderError) as excinfo:
        provider.deactivate_price("price_old")

    assert excinfo.value.reference == "price_old"
    assert excinfo.value.status_code == 502


def test_cancel_at_period_end_modifies_subscription(provider, monkeypatch):
    modify = Recorder()
    cancel = Recorder()
    monkeypatch.setattr(stripe.Subscription, "modify", modify)
    monkeypatch.setattr(stripe.Subscription, "cancel", cancel)

    provider.cancel_subscription("sub_1", at_period_end=True)

    assert modify.calls[0][1]["cancel_at_period_end"] is True
    assert cancel.calls == []


def test_immediate_cancel_deletes_subscription(provider, monkeypatch):
    cancel = Recorder()
    monkeypatch.setattr(stripe.Subscription, "cancel", cancel)

    provider.cancel_subscription("sub_1")

    assert cancel.calls[0][0] == ("sub_1",)


def test_one_time_checkout_uses_payment_mode(provider, monkeypatch):
    create = Recorder(result=SimpleNamespace(id="cs_1", url="https://checkout.stripe.test/cs_1"))
    monkeypatch.setattr(stripe.checkout.Session, "create", create)

    link = provider.create_checkout_session(
        customer_id="cus_1",
        price_id="price_1",
        recurring=False,
        success_url="https://gym.test/ok",
        cancel_url="https://gym.test/cancel",
        metadata={"purchase_type": "credit_topup"},
    )

    _, kwargs = create.calls[0]
    assert kwargs["mode"] == "payment"
    assert "subscription_data" not in kwargs
    assert link.url == "https://checkout.stripe.test/cs_1"


def test_webhook_requires_signature_when_secret_configured(provider):
    with pytest.raises(ValidationError):
        provider.parse_webhook(b'{"id": "evt_1", "type": "invoice.paid"}', None)


def test_webhook_with_bad_signature_is_rejected(provider, monkeypatch):
    def reject(*args, **kwargs):
        raise stripe.SignatureVerificationError("bad signature", "t=1,v1=bad")

    monkeypatch.setattr(stripe.WebhookSignature, "verify_header", reject)

    with pytest.raises(ValidationError):
        provider.parse_webhook(b'{"id": "evt_1", "type": "invoice.paid"}', "t=1,v1=bad")


def test_webhook_with_valid_signature_is_decoded(provider, monkeypatch):
    monkeypatch.setattr(stripe.WebhookSignature, "verify_header", Recorder(result=True))
    payload = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": {"subscription": "sub_1"}}})

    event = provider.parse_webhook(payload.encode(), "t=1,v1=ok")

    assert event.event_id == "evt_1"
    assert event.data == {"subscription": "sub_1"}


def test_unsigned_webhooks_are_accepted_without_secret():
    provider = StripePaymentProvider(api_key="sk_test_123")

    event = provider.parse_webhook(b'{"id": "evt_2", "type": "checkout.session.completed"}', None)

    assert event.data == {}


@pytest.mark.parametrize("body", [b"not json", b"[]", b'{"type": "invoice.paid"}', b"\xff\xfe{"])
def test_malformed_event_envelopes_are_rejected(body):
    provider = StripePaymentProvider(api_key="sk_test_123")

    with pytest.raises(ValidationError):
        provider.parse_webhook(body, None)


def test_decode_event_rejects_non_json_text():
    with pytest.raises(ValidationError):
        decode_event("not json")
