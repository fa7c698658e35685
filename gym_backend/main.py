import logging
import os
from typing import Any, Dict, Optional

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from gym_backend import app_context
from gym_backend.app.routes import entitlements as entitlements_routes
from gym_backend.app.routes import members as members_routes
from gym_backend.app.routes import memberships as memberships_routes
from gym_backend.app.routes import plans as plans_routes
from gym_backend.app.routes import provider as provider_routes
from gym_backend.app.services.engine import get_engine_config

load_dotenv()

ACTOR_HEADER = os.getenv("ACTOR_HEADER", "X-Actor-Id")


def configure_logging(level: Optional[str] = None) -> None:
    resolved = (level or get_engine_config().log_level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, resolved, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _db_settings() -> Dict[str, Any]:
    database = get_engine_config().database
    return dict(
        host=database.host,
        port=database.port,
        dbname=database.name,
        user=database.user,
        password=database.password,
        connect_timeout=database.connect_timeout,
    )


def get_conn():
    return psycopg2.connect(**_db_settings())


def get_current_actor(request: Optional[Request] = None) -> Optional[str]:
    """Caller id forwarded by the authenticating gateway."""

    if request is None:
        return None
    actor = (request.headers.get(ACTOR_HEADER) or "").strip()
    return actor or None


configure_logging()

app = FastAPI(title="Gym Membership Engine")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_engine_config().app_base_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app_context.configure(get_conn=get_conn, get_current_actor=get_current_actor)

app.include_router(entitlements_routes.router)
app.include_router(memberships_routes.router)
app.include_router(plans_routes.router)
app.include_router(members_routes.router)
app.include_router(provider_routes.router)


@app.get("/api/health")
def health() -> Dict[str, str]:
    config = get_engine_config()
    return {
        "status": "ok",
        "provider": "stripe" if config.stripe_enabled else "sandbox",
    }
