"""Engine configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class DatabaseConfig:
    host: str
    port: int
    name: str
    user: str
    password: Optional[str]
    connect_timeout: int


@dataclass(frozen=True)
class EngineConfig:
    """Configuration for the membership engine and its collaborators."""

    database: DatabaseConfig
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    stripe_timeout_seconds: float
    stripe_max_network_retries: int
    billing_currency: str
    gym_timezone: str
    plan_cache_ttl_seconds: int
    ledger_max_retries: int
    app_base_url: str
    sandbox_provider: bool
    log_level: str

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key) and not self.sandbox_provider


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_database_config(env: Optional[Mapping[str, str]] = None) -> DatabaseConfig:
    env_mapping = os.environ if env is None else env
    return DatabaseConfig(
        host=env_mapping.get("DB_HOST", "localhost"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        name=env_mapping.get("DB_NAME", "gym"),
        user=env_mapping.get("DB_USER", "postgres"),
        password=env_mapping.get("DB_PASSWORD") or None,
        connect_timeout=max(1, _to_int(env_mapping.get("DB_CONNECT_TIMEOUT"), default=10)),
    )


def load_engine_config(env: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """Load :class:`EngineConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    stripe_secret_key = env_mapping.get("STRIPE_SECRET_KEY") or None
    stripe_webhook_secret = env_mapping.get("STRIPE_WEBHOOK_SECRET") or None
    stripe_timeout_seconds = max(1.0, _to_float(env_mapping.get("STRIPE_TIMEOUT_SECONDS"), default=20.0))
    stripe_max_network_retries = max(0, _to_int(env_mapping.get("STRIPE_MAX_NETWORK_RETRIES"), default=2))

    billing_currency = (env_mapping.get("BILLING_CURRENCY") or "eur").strip().lower() or "eur"
    gym_timezone = (env_mapping.get("GYM_TIMEZONE") or "Europe/Berlin").strip() or "Europe/Berlin"

    plan_cache_ttl_seconds = max(0, _to_int(env_mapping.get("PLAN_CACHE_TTL_SECONDS"), default=300))
    ledger_max_retries = max(0, _to_int(env_mapping.get("LEDGER_MAX_RETRIES"), default=3))

    app_base_url = env_mapping.get("APP_BASE_URL", "http://localhost:5173")
    sandbox_provider = _to_bool(env_mapping.get("PAYMENT_SANDBOX"), default=stripe_secret_key is None)

    return EngineConfig(
        database=load_database_config(env_mapping),
        stripe_secret_key=stripe_secret_key,
        stripe_webhook_secret=stripe_webhook_secret,
        stripe_timeout_seconds=stripe_timeout_seconds,
        stripe_max_network_retries=stripe_max_network_retries,
        billing_currency=billing_currency,
        gym_timezone=gym_timezone,
        plan_cache_ttl_seconds=plan_cache_ttl_seconds,
        ledger_max_retries=ledger_max_retries,
        app_base_url=app_base_url.rstrip("/"),
        sandbox_provider=sandbox_provider,
        log_level=(env_mapping.get("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
    )


__all__ = ["DatabaseConfig", "EngineConfig", "load_database_config", "load_engine_config"]
