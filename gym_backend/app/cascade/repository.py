"""Member tables touched by the member deletion cascade."""
from __future__ import annotations

from typing import Dict, Protocol

from ..memberships.repository import PostgresRepository

DERIVED_STAT_TABLES = (
    "course_registrations",
    "leaderboard_entries",
    "training_sessions",
    "training_plans",
    "user_read_news",
)


class MemberDirectory(Protocol):
    def profile_exists(self, user_id: str) -> bool:
        ...

    def delete_role_grants(self, user_id: str) -> int:
        ...

    def delete_derived_stats(self, user_id: str) -> Dict[str, int]:
        """Delete bookings and other per-user statistics, counted per table."""

    def delete_profile(self, user_id: str) -> bool:
        ...


class IdentityProvider(Protocol):
    """External identity store holding the login record."""

    def delete_user(self, user_id: str) -> None:
        ...


class PostgresMemberDirectory(PostgresRepository):
    def profile_exists(self, user_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("SELECT 1 FROM profiles WHERE id = %s LIMIT 1", (user_id,))
            return cursor.fetchone() is not None

    def delete_role_grants(self, user_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM user_roles WHERE user_id = %s", (user_id,))
            return cursor.rowcount

    def delete_derived_stats(self, user_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._cursor() as cursor:
            for table in DERIVED_STAT_TABLES:
                cursor.execute(f"DELETE FROM {table} WHERE user_id = %s", (user_id,))
                counts[table] = cursor.rowcount
        return counts

    def delete_profile(self, user_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM profiles WHERE id = %s", (user_id,))
            return cursor.rowcount > 0


class PostgresIdentityProvider(PostgresRepository):
    """Deletes the login record from the ``auth.users`` table."""

    def delete_user(self, user_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM auth.users WHERE id = %s", (user_id,))


__all__ = [
    "DERIVED_STAT_TABLES",
    "IdentityProvider",
    "MemberDirectory",
    "PostgresIdentityProvider",
    "PostgresMemberDirectory",
]
