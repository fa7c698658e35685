"""Cache abstractions for plan lookups on the booking path."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, Optional, Protocol, Sequence, Set

from ..memberships.models import MembershipPlan
from ..memberships.repository import PlanRepository

ALL_PLANS_TAG = "plans"


def plan_tag(plan_id: str) -> str:
    return f"plan:{plan_id}"


class PlanCache(Protocol):
    """Protocol describing cache operations used by the plan lookup."""

    def get(self, key: str) -> Optional[MembershipPlan]:
        ...

    def set(self, key: str, value: MembershipPlan, expires_at: datetime, tags: Set[str]) -> None:
        ...

    def invalidate(self, tags: Iterable[str]) -> None:
        ...


@dataclass
class _CacheEntry:
    value: MembershipPlan
    expires_at: datetime
    tags: Set[str]

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class InMemoryPlanCache:
    """Process-local plan cache with TTL expiry and tag invalidation.

    Shared by every request thread, so all access goes through one lock.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._entries: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get(self, key: str) -> Optional[MembershipPlan]:
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            if entry.is_expired(self._clock()):
                self._entries.pop(key, None)
                return None
            return entry.value

    def set(
        self,
        key: str,
        value: MembershipPlan,
        expires_at: datetime,
        tags: Set[str],
    ) -> None:
        if expires_at <= self._clock():
            return
        entry = _CacheEntry(value=value, expires_at=expires_at, tags=set(tags))
        with self._lock:
            self._entries[key] = entry

    def invalidate(self, tags: Iterable[str]) -> None:
        tag_set = set(tags)
        if not tag_set:
            return
        with self._lock:
            keys_to_delete = [
                key
                for key, entry in list(self._entries.items())
                if entry.tags.intersection(tag_set)
            ]
            for key in keys_to_delete:
                self._entries.pop(key, None)

    def invalidate_plan(self, plan_id: str) -> None:
        self.invalidate({plan_tag(plan_id)})

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CachedPlanRepository:
    """Read-through cache in front of a :class:`PlanRepository`.

    Writes go straight to the wrapped repository and drop the cached entry.
    """

    def __init__(
        self,
        repository: PlanRepository,
        cache: PlanCache,
        *,
        ttl_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._cache = cache
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get_plan(self, plan_id: str) -> Optional[MembershipPlan]:
        key = plan_tag(plan_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        plan = self._repository.get_plan(plan_id)
        if plan is not None and self._ttl.total_seconds() > 0:
            self._cache.set(key, plan, self._clock() + self._ttl, {key, ALL_PLANS_TAG})
        return plan

    def list_plans(self, *, active_only: bool = False) -> Sequence[MembershipPlan]:
        return self._repository.list_plans(active_only=active_only)

    def save_plan(self, plan: MembershipPlan) -> MembershipPlan:
        stored = self._repository.save_plan(plan)
        self._cache.invalidate({plan_tag(plan.id)})
        return stored

    def delete_plan(self, plan_id: str) -> bool:
        deleted = self._repository.delete_plan(plan_id)
        self._cache.invalidate({plan_tag(plan_id)})
        return deleted

    def invalidate_plan(self, plan_id: str) -> None:
        self._cache.invalidate({plan_tag(plan_id)})

    def invalidate_all(self) -> None:
        self._cache.invalidate({ALL_PLANS_TAG})


__all__ = [
    "ALL_PLANS_TAG",
    "CachedPlanRepository",
    "InMemoryPlanCache",
    "PlanCache",
    "plan_tag",
]
