from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from gym_backend.app.entitlements import CachedPlanRepository, InMemoryPlanCache
from gym_backend.tests.fakes import InMemoryPlanRepository, build_plan


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 16, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _cached(ttl_seconds: int = 300):
    clock = Clock()
    backing = InMemoryPlanRepository()
    backing.save_plan(build_plan("p1"))
    repository = CachedPlanRepository(backing, InMemoryPlanCache(clock=clock), ttl_seconds=ttl_seconds, clock=clock)
    return repository, backing, clock


def test_repeated_reads_hit_the_cache():
    repository, backing, _ = _cached()

    repository.get_plan("p1")
    repository.get_plan("p1")

    assert backing.reads == 1


def test_entries_expire_after_ttl():
    repository, backing, clock = _cached(ttl_seconds=60)

    repository.get_plan("p1")
    clock.now += timedelta(seconds=61)
    repository.get_plan("p1")

    assert backing.reads == 2


def test_save_invalidates_cached_plan():
    repository, backing, _ = _cached()
    repository.get_plan("p1")

    repository.save_plan(build_plan("p1", name="Renamed"))

    assert repository.get_plan("p1").name == "Renamed"


def test_invalidate_all_drops_every_plan():
    repository, backing, _ = _cached()
    backing.save_plan(build_plan("p2"))
    repository.get_plan("p1")
    repository.get_plan("p2")

    repository.invalidate_all()
    repository.get_plan("p1")
    repository.get_plan("p2")

    assert backing.reads == 4


def test_zero_ttl_disables_caching():
    repository, backing, _ = _cached(ttl_seconds=0)

    repository.get_plan("p1")
    repository.get_plan("p1")

    assert backing.reads == 2


def test_missing_plans_are_not_cached():
    repository, backing, _ = _cached()

    assert repository.get_plan("ghost") is None
    assert repository.get_plan("ghost") is None
    assert backing.reads == 2


def test_concurrent_writes_and_invalidations_stay_consistent():
    cache = InMemoryPlanCache()
    plans = [build_plan(f"p{index}") for index in range(20)]
    expires_at = datetime.now(timezone.utc) + timedelta(hours=1)

    def churn(worker: int) -> None:
        for round_ in range(300):
            plan = plans[(worker + round_) % len(plans)]
            cache.set(f"plan:{plan.id}", plan, expires_at, {f"plan:{plan.id}", "plans"})
            cache.get(f"plan:{plan.id}")
            if round_ % 7 == 0:
                cache.invalidate({"plans"})
            if round_ % 50 == 0:
                cache.invalidate_all()

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(churn, range(8)))

    cache.invalidate({"plans"})
    assert len(cache) == 0
    assert cache.get("plan:p1") is None
