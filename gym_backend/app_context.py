"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import Any, Callable, Optional

_get_conn: Optional[Callable[[], Any]] = None
_get_current_actor: Optional[Callable[..., Optional[str]]] = None


def configure(
    *,
    get_conn: Callable[[], Any],
    get_current_actor: Optional[Callable[..., Optional[str]]] = None,
) -> None:
    """Register application-wide dependencies required by modular routers."""

    global _get_conn
    global _get_current_actor

    _get_conn = get_conn
    _get_current_actor = get_current_actor


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Application context has not been configured yet: {name}")
    return value


def get_conn() -> Any:
    conn_factory = _require(_get_conn, "get_conn")
    return conn_factory()


def get_current_actor(*args: Any, **kwargs: Any) -> Optional[str]:
    """Identifier of the authenticated caller, ``None`` when unconfigured."""

    if _get_current_actor is None:
        return None
    return _get_current_actor(*args, **kwargs)


def reset() -> None:
    global _get_conn
    global _get_current_actor

    _get_conn = None
    _get_current_actor = None
