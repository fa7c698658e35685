"""Persistence of processed provider event ids."""
from __future__ import annotations

import psycopg2.extras

from ..memberships.repository import PostgresRepository
from .models import ProviderEvent


class PostgresProcessedEventRepository(PostgresRepository):
    """Event ids stored in ``processed_provider_events``."""

    def has_event(self, event_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM processed_provider_events WHERE event_id = %s LIMIT 1",
                (event_id,),
            )
            return cursor.fetchone() is not None

    def record_event(self, event: ProviderEvent) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO processed_provider_events (
                    event_id,
                    event_type,
                    payload,
                    received_at,
                    processed_at
                )
                VALUES (%s, %s, %s, %s, NOW())
                ON CONFLICT (event_id) DO NOTHING
                """,
                (
                    event.event_id,
                    event.event_type,
                    psycopg2.extras.Json(event.data),
                    event.received_at,
                ),
            )
            return cursor.rowcount > 0

    def release_event(self, event_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM processed_provider_events WHERE event_id = %s", (event_id,))


__all__ = ["PostgresProcessedEventRepository"]
