from __future__ import annotations

from prompttrain_gateway.runtime.bounded_maps import ExpiringLruMap


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_expiring_lru_map_evicts_least_recently_used_key() -> None:
    values = ExpiringLruMap[str, int](max_keys=2, ttl_seconds=60)
    values.set("a", 1)
    values.set("b", 2)
    assert values.get("a") == 1
    values.set("c", 3)

    assert "b" not in values
    assert values.get("a") == 1
    assert values.get("c") == 3
    assert len(values) == 2


def test_expiring_lru_map_drops_entries_after_ttl() -> None:
    clock = FakeClock()
    values = ExpiringLruMap[str, int](max_keys=10, ttl_seconds=5, clock=clock)
    values.set("a", 1)
    clock.now += 4.9
    assert values.get("a") == 1

    clock.now += 0.2
    assert values.get("a") is None
    assert "a" not in values


def test_expiring_lru_map_prune_removes_only_expired_entries() -> None:
    clock = FakeClock()
    values = ExpiringLruMap[str, str](max_keys=10, ttl_seconds=10, clock=clock)
    values.set("old", "x")
    clock.now += 6
    values.set("new", "y")
    clock.now += 5

    assert values.prune() == 1
    assert values.get("new") == "y"
    assert len(values) == 1
