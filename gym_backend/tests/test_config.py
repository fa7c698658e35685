from __future__ import annotations

import pytest

from gym_backend.config import load_engine_config


def test_defaults_run_against_the_sandbox():
    config = load_engine_config({})

    assert config.sandbox_provider is True
    assert config.stripe_enabled is False
    assert config.billing_currency == "eur"
    assert config.gym_timezone == "Europe/Berlin"
    assert config.ledger_max_retries == 3
    assert config.plan_cache_ttl_seconds == 300
    assert config.database.port == 5432


def test_stripe_key_enables_live_provider():
    config = load_engine_config({"STRIPE_SECRET_KEY": "sk_test_1", "BILLING_CURRENCY": " USD "})

    assert config.stripe_enabled is True
    assert config.billing_currency == "usd"


def test_sandbox_flag_overrides_stripe_key():
    config = load_engine_config({"STRIPE_SECRET_KEY": "sk_test_1", "PAYMENT_SANDBOX": "yes"})

    assert config.stripe_enabled is False


def test_numeric_values_are_clamped():
    config = load_engine_config(
        {"LEDGER_MAX_RETRIES": "-2", "PLAN_CACHE_TTL_SECONDS": "-5", "STRIPE_TIMEOUT_SECONDS": "0.1"}
    )

    assert config.ledger_max_retries == 0
    assert config.plan_cache_ttl_seconds == 0
    assert config.stripe_timeout_seconds == 1.0


def test_app_base_url_loses_trailing_slash():
    assert load_engine_config({"APP_BASE_URL": "https://gym.test/"}).app_base_url == "https://gym.test"


def test_invalid_integer_is_reported():
    with pytest.raises(ValueError):
        load_engine_config({"DB_PORT": "abc"})
