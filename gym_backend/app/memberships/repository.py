"""Persistence layer for plans, memberships and the credit audit trail."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Iterator, Optional, Protocol, Sequence, Tuple

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..booking_rules import BookingRuleFamily, dump_booking_rules, resolve_booking_rules
from ..errors import (
    ActiveMembershipExistsError,
    BookingRulesConfigurationError,
    PersistenceError,
)
from ..ledger.models import AdjustmentMode, CreditAdjustment
from .data import dump_membership_data, load_membership_data
from .models import Membership, MembershipPlan, MembershipStatus, PaymentFrequency
from ...app_context import get_conn

logger = logging.getLogger("memberships.repository")


class PlanRepository(Protocol):
    def get_plan(self, plan_id: str) -> Optional[MembershipPlan]:
        ...

    def list_plans(self, *, active_only: bool = False) -> Sequence[MembershipPlan]:
        ...

    def save_plan(self, plan: MembershipPlan) -> MembershipPlan:
        ...

    def delete_plan(self, plan_id: str) -> bool:
        ...


class MembershipRepository(Protocol):
    def get_membership(self, membership_id: str) -> Optional[Membership]:
        ...

    def list_for_user(
        self,
        user_id: str,
        statuses: Optional[Iterable[MembershipStatus]] = None,
    ) -> Sequence[Membership]:
        ...

    def list_for_plan(
        self,
        plan_id: str,
        statuses: Optional[Iterable[MembershipStatus]] = None,
    ) -> Sequence[Membership]:
        ...

    def list_by_subscription(self, stripe_subscription_id: str) -> Sequence[Membership]:
        ...

    def list_by_checkout_session(self, session_id: str) -> Sequence[Membership]:
        """Memberships created by the given one-time checkout session."""

    def list_due_activation(self, on: date) -> Sequence[Membership]:
        ...

    def insert_membership(self, membership: Membership) -> Membership:
        ...

    def update_membership(self, membership: Membership, *, expected_version: int) -> Optional[Membership]:
        """Persist ``membership`` only if the stored version still matches.

        Returns the stored row with its bumped version, or ``None`` when the
        version check failed.
        """

    def apply_credit_adjustment(
        self,
        membership: Membership,
        *,
        expected_version: int,
        adjustment: CreditAdjustment,
    ) -> Optional[Membership]:
        """Conditional update plus audit insert in a single transaction."""

    def list_credit_adjustments(self, membership_id: str) -> Sequence[CreditAdjustment]:
        ...

    def delete_for_user(self, user_id: str) -> int:
        ...


class BookingUsageRepository(Protocol):
    def count_bookings(self, user_id: str, *, start: datetime, end: datetime) -> int:
        """Non-cancelled bookings whose resource starts inside ``[start, end)``."""

    def record_open_gym_visit(self, user_id: str, day: date) -> bool:
        """Store a free training session for ``day``; ``False`` if one exists."""


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


class PostgresRepository:
    """Shared cursor handling for the PostgreSQL repositories."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                    if managed:
                        connection.commit()
                except Exception:
                    if managed:
                        connection.rollback()
                    raise
                finally:
                    cursor.close()
        except psycopg2.errors.UniqueViolation as exc:
            raise self._unique_violation(exc) from exc
        except psycopg2.Error as exc:
            logger.error("Database call failed: %s", exc)
            raise PersistenceError("Database operation failed", detail={"pgcode": exc.pgcode}) from exc

    def _unique_violation(self, exc: psycopg2.Error) -> Exception:
        return PersistenceError("Duplicate record", detail={"pgcode": exc.pgcode})


def _row_to_plan(row: dict) -> MembershipPlan:
    synced_price = row.get("synced_price")
    return MembershipPlan(
        id=str(row["id"]),
        name=row["name"],
        description=row.get("description"),
        booking_rules=row.get("booking_rules"),
        price=Decimal(str(row.get("price") or 0)),
        payment_frequency=PaymentFrequency(row.get("payment_frequency") or PaymentFrequency.MONTHLY.value),
        duration_months=int(row.get("duration_months") or 1),
        cancellation_allowed=bool(row.get("cancellation_allowed", True)),
        stripe_product_id=row.get("stripe_product_id"),
        stripe_price_id=row.get("stripe_price_id"),
        synced_price=Decimal(str(synced_price)) if synced_price is not None else None,
        is_active=bool(row.get("is_active", True)),
        color=row.get("color") or "#52a7b4",
        legacy_booking_type=row.get("booking_type"),
        legacy_booking_limit=row.get("booking_limit"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _family_from_row(row: dict) -> Optional[BookingRuleFamily]:
    try:
        rules = resolve_booking_rules(
            row.get("plan_booking_rules"),
            row.get("plan_booking_type"),
            row.get("plan_booking_limit"),
        )
    except BookingRulesConfigurationError:
        logger.warning(
            "Plan %s has malformed booking rules, using stored membership family",
            row.get("membership_plan_id"),
        )
        return None
    return rules.family if rules is not None else None


def _row_to_membership(row: dict) -> Membership:
    return Membership(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        plan_id=str(row["membership_plan_id"]),
        status=MembershipStatus(row["status"]),
        start_date=row["start_date"],
        end_date=row.get("end_date"),
        stripe_customer_id=row.get("stripe_customer_id"),
        stripe_subscription_id=row.get("stripe_subscription_id"),
        stripe_checkout_session_id=row.get("stripe_checkout_session_id"),
        replaces_membership_id=(
            str(row["replaces_membership_id"]) if row.get("replaces_membership_id") else None
        ),
        membership_data=load_membership_data(row.get("membership_data"), _family_from_row(row)),
        version=int(row.get("version") or 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_adjustment(row: dict) -> CreditAdjustment:
    return CreditAdjustment(
        adjustment_id=str(row["adjustment_id"]),
        membership_id=str(row["membership_id"]),
        mode=AdjustmentMode(row["mode"]),
        requested_amount=int(row["requested_amount"]),
        delta=int(row["delta"]),
        previous_balance=int(row["previous_balance"]),
        new_balance=int(row["new_balance"]),
        clamped=bool(row["clamped"]),
        actor=row.get("actor"),
        reason=row.get("reason"),
        occurred_at=row["occurred_at"],
    )


_MEMBERSHIP_SELECT = """
    SELECT m.*,
           p.booking_rules AS plan_booking_rules,
           p.booking_type AS plan_booking_type,
           p.booking_limit AS plan_booking_limit
    FROM user_memberships_v2 AS m
    LEFT JOIN membership_plans_v2 AS p ON p.id = m.membership_plan_id
"""

_RETURNING_WITH_PLAN = """
    SELECT changed.*,
           p.booking_rules AS plan_booking_rules,
           p.booking_type AS plan_booking_type,
           p.booking_limit AS plan_booking_limit
    FROM changed
    LEFT JOIN membership_plans_v2 AS p ON p.id = changed.membership_plan_id
"""


def _status_values(statuses: Optional[Iterable[MembershipStatus]]) -> Optional[Tuple[str, ...]]:
    if statuses is None:
        return None
    return tuple(MembershipStatus(status).value for status in statuses)


class PostgresPlanRepository(PostgresRepository):
    """Plans stored in ``membership_plans_v2``."""

    def get_plan(self, plan_id: str) -> Optional[MembershipPlan]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM membership_plans_v2 WHERE id = %s LIMIT 1",
                (plan_id,),
            )
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def list_plans(self, *, active_only: bool = False) -> Sequence[MembershipPlan]:
        query = "SELECT * FROM membership_plans_v2"
        if active_only:
            query += " WHERE is_active"
        with self._cursor() as cursor:
            cursor.execute(query + " ORDER BY price ASC, name ASC")
            return [_row_to_plan(row) for row in cursor.fetchall() or []]

    def save_plan(self, plan: MembershipPlan) -> MembershipPlan:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO membership_plans_v2 (
                    id,
                    name,
                    description,
                    booking_rules,
                    price,
                    payment_frequency,
                    duration_months,
                    cancellation_allowed,
                    stripe_product_id,
                    stripe_price_id,
                    synced_price,
                    is_active,
                    color,
                    booking_type,
                    booking_limit
                )
                VALUES (%(id)s, %(name)s, %(description)s, %(booking_rules)s, %(price)s,
                        %(payment_frequency)s, %(duration_months)s, %(cancellation_allowed)s,
                        %(stripe_product_id)s, %(stripe_price_id)s, %(synced_price)s,
                        %(is_active)s, %(color)s, %(booking_type)s, %(booking_limit)s)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    booking_rules = EXCLUDED.booking_rules,
                    price = EXCLUDED.price,
                    payment_frequency = EXCLUDED.payment_frequency,
                    duration_months = EXCLUDED.duration_months,
                    cancellation_allowed = EXCLUDED.cancellation_allowed,
                    stripe_product_id = EXCLUDED.stripe_product_id,
                    stripe_price_id = EXCLUDED.stripe_price_id,
                    synced_price = EXCLUDED.synced_price,
                    is_active = EXCLUDED.is_active,
                    color = EXCLUDED.color,
                    booking_type = EXCLUDED.booking_type,
                    booking_limit = EXCLUDED.booking_limit,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "id": plan.id,
                    "name": plan.name,
                    "description": plan.description,
                    "booking_rules": (
                        psycopg2.extras.Json(dump_booking_rules(plan.booking_rules))
                        if plan.booking_rules is not None
                        else None
                    ),
                    "price": plan.price,
                    "payment_frequency": plan.payment_frequency.value,
                    "duration_months": plan.duration_months,
                    "cancellation_allowed": plan.cancellation_allowed,
                    "stripe_product_id": plan.stripe_product_id,
                    "stripe_price_id": plan.stripe_price_id,
                    "synced_price": plan.synced_price,
                    "is_active": plan.is_active,
                    "color": plan.color,
                    "booking_type": plan.legacy_booking_type,
                    "booking_limit": plan.legacy_booking_limit,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise PersistenceError("Failed to persist plan", detail={"plan_id": plan.id})
            return _row_to_plan(row)

    def delete_plan(self, plan_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM membership_plans_v2 WHERE id = %s", (plan_id,))
            return cursor.rowcount > 0


class PostgresMembershipRepository(PostgresRepository):
    """Memberships stored in ``user_memberships_v2`` with a version column."""

    def _unique_violation(self, exc: psycopg2.Error) -> Exception:
        # user_memberships_v2 carries a partial unique index on (user_id) WHERE status = 'active'
        return ActiveMembershipExistsError(
            "User already holds an active membership",
            detail={"pgcode": exc.pgcode},
        )

    def get_membership(self, membership_id: str) -> Optional[Membership]:
        with self._cursor() as cursor:
            cursor.execute(_MEMBERSHIP_SELECT + " WHERE m.id = %s LIMIT 1", (membership_id,))
            row = cursor.fetchone()
            return _row_to_membership(row) if row else None

    def _list(self, column: str, value: str, statuses: Optional[Iterable[MembershipStatus]]) -> Sequence[Membership]:
        query = _MEMBERSHIP_SELECT + f" WHERE m.{column} = %s"
        params: list = [value]
        status_values = _status_values(statuses)
        if status_values is not None:
            query += " AND m.status IN %s"
            params.append(status_values)
        query += " ORDER BY m.start_date DESC, m.created_at DESC"
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return [_row_to_membership(row) for row in cursor.fetchall() or []]

    def list_for_user(
        self,
        user_id: str,
        statuses: Optional[Iterable[MembershipStatus]] = None,
    ) -> Sequence[Membership]:
        return self._list("user_id", user_id, statuses)

    def list_for_plan(
        self,
        plan_id: str,
        statuses: Optional[Iterable[MembershipStatus]] = None,
    ) -> Sequence[Membership]:
        return self._list("membership_plan_id", plan_id, statuses)

    def list_by_subscription(self, stripe_subscription_id: str) -> Sequence[Membership]:
        return self._list("stripe_subscription_id", stripe_subscription_id, None)

    def list_by_checkout_session(self, session_id: str) -> Sequence[Membership]:
        return self._list("stripe_checkout_session_id", session_id, None)

    def list_due_activation(self, on: date) -> Sequence[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                _MEMBERSHIP_SELECT
                + """
                WHERE m.status = %s
                  AND m.start_date <= %s
                  AND COALESCE((m.membership_data ->> 'awaiting_payment')::boolean, FALSE) = FALSE
                ORDER BY m.start_date ASC
                """,
                (MembershipStatus.PENDING_ACTIVATION.value, on),
            )
            return [_row_to_membership(row) for row in cursor.fetchall() or []]

    def insert_membership(self, membership: Membership) -> Membership:
        with self._cursor() as cursor:
            cursor.execute(
                """
                WITH changed AS (
                    INSERT INTO user_memberships_v2 (
                        id,
                        user_id,
                        membership_plan_id,
                        status,
                        start_date,
                        end_date,
                        stripe_customer_id,
                        stripe_subscription_id,
                        stripe_checkout_session_id,
                        replaces_membership_id,
                        membership_data,
                        version
                    )
                    VALUES (%(id)s, %(user_id)s, %(plan_id)s, %(status)s, %(start_date)s,
                            %(end_date)s, %(stripe_customer_id)s, %(stripe_subscription_id)s,
                            %(stripe_checkout_session_id)s, %(replaces_membership_id)s,
                            %(membership_data)s, 0)
                    RETURNING *
                )
                """
                + _RETURNING_WITH_PLAN,
                self._params(membership),
            )
            row = cursor.fetchone()
            if not row:
                raise PersistenceError("Failed to persist membership", detail={"membership_id": membership.id})
            return _row_to_membership(row)

    def update_membership(self, membership: Membership, *, expected_version: int) -> Optional[Membership]:
        with self._cursor() as cursor:
            return self._conditional_update(cursor, membership, expected_version)

    def apply_credit_adjustment(
        self,
        membership: Membership,
        *,
        expected_version: int,
        adjustment: CreditAdjustment,
    ) -> Optional[Membership]:
        with self._cursor() as cursor:
            updated = self._conditional_update(cursor, membership, expected_version)
            if updated is None:
                return None
            cursor.execute(
                """
                INSERT INTO credit_adjustments (
                    adjustment_id,
                    membership_id,
                    mode,
                    requested_amount,
                    delta,
                    previous_balance,
                    new_balance,
                    clamped,
                    actor,
                    reason,
                    occurred_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    adjustment.adjustment_id,
                    adjustment.membership_id,
                    adjustment.mode.value,
                    adjustment.requested_amount,
                    adjustment.delta,
                    adjustment.previous_balance,
                    adjustment.new_balance,
                    adjustment.clamped,
                    adjustment.actor,
                    adjustment.reason,
                    adjustment.occurred_at,
                ),
            )
            return updated

    def list_credit_adjustments(self, membership_id: str) -> Sequence[CreditAdjustment]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM credit_adjustments
                WHERE membership_id = %s
                ORDER BY occurred_at ASC
                """,
                (membership_id,),
            )
            return [_row_to_adjustment(row) for row in cursor.fetchall() or []]

    def delete_for_user(self, user_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM user_memberships_v2 WHERE user_id = %s", (user_id,))
            return cursor.rowcount

    @staticmethod
    def _params(membership: Membership) -> dict:
        return {
            "id": membership.id,
            "user_id": membership.user_id,
            "plan_id": membership.plan_id,
            "status": membership.status.value,
            "start_date": membership.start_date,
            "end_date": membership.end_date,
            "stripe_customer_id": membership.stripe_customer_id,
            "stripe_subscription_id": membership.stripe_subscription_id,
            "stripe_checkout_session_id": membership.stripe_checkout_session_id,
            "replaces_membership_id": membership.replaces_membership_id,
            "membership_data": psycopg2.extras.Json(dump_membership_data(membership.membership_data)),
        }

    def _conditional_update(
        self,
        cursor: PgCursor,
        membership: Membership,
        expected_version: int,
    ) -> Optional[Membership]:
        params = self._params(membership)
        params["expected_version"] = expected_version
        cursor.execute(
            """
            WITH changed AS (
                UPDATE user_memberships_v2
                SET status = %(status)s,
                    start_date = %(start_date)s,
                    end_date = %(end_date)s,
                    stripe_customer_id = %(stripe_customer_id)s,
                    stripe_subscription_id = %(stripe_subscription_id)s,
                    replaces_membership_id = %(replaces_membership_id)s,
                    membership_data = %(membership_data)s,
                    version = version + 1,
                    updated_at = NOW()
                WHERE id = %(id)s AND version = %(expected_version)s
                RETURNING *
            )
            """
            + _RETURNING_WITH_PLAN,
            params,
        )
        row = cursor.fetchone()
        return _row_to_membership(row) if row else None


class PostgresBookingUsageRepository(PostgresRepository):
    """Course consumption from ``course_registrations``, open gym visits in ``training_sessions``."""

    def count_bookings(self, user_id: str, *, start: datetime, end: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT COUNT(*) AS used
                FROM course_registrations AS r
                JOIN courses AS c ON c.id = r.course_id
                WHERE r.user_id = %s
                  AND COALESCE(r.status, 'registered') <> 'cancelled'
                  AND c.start_time >= %s
                  AND c.start_time < %s
                """,
                (user_id, start, end),
            )
            row = cursor.fetchone()
            return int(row["used"]) if row else 0

    def record_open_gym_visit(self, user_id: str, day: date) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO training_sessions (
                    user_id,
                    session_date,
                    session_type,
                    status,
                    completed_at
                )
                VALUES (%s, %s, 'free_training', 'completed', NOW())
                ON CONFLICT (user_id, session_date, session_type) DO NOTHING
                """,
                (user_id, day),
            )
            return cursor.rowcount > 0


__all__ = [
    "BookingUsageRepository",
    "MembershipRepository",
    "PlanRepository",
    "PostgresBookingUsageRepository",
    "PostgresMembershipRepository",
    "PostgresPlanRepository",
    "PostgresRepository",
    "managed_connection",
]
