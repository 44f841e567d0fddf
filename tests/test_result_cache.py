"""Tests for the completion result cache and key policies."""

from __future__ import annotations

import pytest

from m31_agents.completion.result_cache import (
    ExactPrefixKeyPolicy,
    ResultCache,
    TrimmedTailKeyPolicy,
    key_policy_for,
)

from tests.helpers import FakeClock


def _make_cache(clock: FakeClock, **overrides: float) -> ResultCache:
    params = {"ttl_seconds": 60.0, "max_entries": 100, "evict_batch": 20}
    params.update(overrides)
    return ResultCache(clock=clock, **params)  # type: ignore[arg-type]


def test_get_returns_value_strictly_before_ttl() -> None:
    clock = FakeClock()
    cache = _make_cache(clock)
    cache.put("k", "v")

    clock.advance(59.999)
    assert cache.get("k") == "v"


def test_get_at_ttl_boundary_expires_and_removes_entry() -> None:
    clock = FakeClock()
    cache = _make_cache(clock)
    cache.put("k", "v")

    clock.advance(60.0)

    assert "k" not in cache
    assert len(cache) == 1
    assert cache.get("k") is None
    assert len(cache) == 0
    assert cache.stats.expirations == 1


def test_put_overwrites_and_refreshes_created_at() -> None:
    clock = FakeClock()
    cache = _make_cache(clock)
    cache.put("k", "old")
    clock.advance(50)
    cache.put("k", "new")
    clock.advance(50)

    assert cache.get("k") == "new"
    assert len(cache) == 1


def test_exceeding_capacity_evicts_twenty_oldest() -> None:
    clock = FakeClock()
    cache = _make_cache(clock)
    for index in range(101):
        cache.put(f"key-{index}", f"value-{index}")
        clock.advance(0.01)

    assert len(cache) == 81
    assert cache.stats.evictions == 20
    for index in range(20):
        assert cache.get(f"key-{index}") is None
    assert cache.get("key-20") == "value-20"
    assert cache.get("key-100") == "value-100"


def test_eviction_orders_by_created_at_not_key() -> None:
    clock = FakeClock()
    cache = _make_cache(clock, max_entries=3, evict_batch=2)
    for key in ("c", "a", "d"):
        cache.put(key, key)
        clock.advance(1)
    cache.put("c", "c2")
    clock.advance(1)
    cache.put("b", "b")

    assert len(cache) == 2
    assert cache.get("a") is None
    assert cache.get("d") is None
    assert cache.get("c") == "c2"
    assert cache.get("b") == "b"


def test_stats_track_hits_and_misses() -> None:
    clock = FakeClock()
    cache = _make_cache(clock)
    cache.put("k", "v")

    cache.get("k")
    cache.get("missing")

    assert cache.stats.hits == 1
    assert cache.stats.misses == 1
    assert cache.stats.hit_rate == pytest.approx(0.5)
    assert cache.stats.to_dict()["hits"] == 1


def test_clear_drops_everything() -> None:
    cache = _make_cache(FakeClock())
    cache.put("a", "1")
    cache.put("b", "2")

    cache.clear()

    assert len(cache) == 0
    assert cache.get("a") is None


def test_exact_policy_matches_reference_format() -> None:
    policy = ExactPrefixKeyPolicy()
    context = "x" * 80

    key = policy.key_for("javascript", "console.", context)

    assert key == f"javascript:console.:{'x' * 50}"
    assert policy.key_for("javascript", "console.l", "") != policy.key_for("javascript", "console.", "")
    assert policy.key_for("typescript", "console.", "") != policy.key_for("javascript", "console.", "")


def test_tail_policy_ignores_indentation_and_long_heads() -> None:
    policy = TrimmedTailKeyPolicy(tail_chars=8)

    assert policy.key_for("python", "    return  value", "") == policy.key_for("python", "return value", "")
    assert policy.key_for("python", "aaaaaaaaaa" + "return x", "") == policy.key_for(
        "python", "bbbbbbbbbb" + "return x", ""
    )
    assert policy.key_for("python", "foo ", "") != policy.key_for("python", "foo", "")


def test_key_policy_for_falls_back_to_exact() -> None:
    assert isinstance(key_policy_for("tail"), TrimmedTailKeyPolicy)
    assert isinstance(key_policy_for("EXACT"), ExactPrefixKeyPolicy)
    assert isinstance(key_policy_for("nonsense"), ExactPrefixKeyPolicy)
    assert isinstance(key_policy_for(None), ExactPrefixKeyPolicy)


def test_non_positive_ttl_is_rejected() -> None:
    with pytest.raises(ValueError):
        ResultCache(ttl_seconds=0)


def test_reconfigure_applies_new_ttl_and_trims_to_capacity() -> None:
    clock = FakeClock()
    cache = _make_cache(clock, max_entries=10, evict_batch=3)
    for index in range(10):
        cache.put(f"k{index}", str(index))
        clock.advance(1)

    cache.reconfigure(ttl_seconds=5, max_entries=4)

    assert cache.ttl_seconds == 5
    assert cache.max_entries == 4
    assert len(cache) == 4
    assert "k0" not in cache
    assert cache.get("k9") == "9"
    clock.advance(2)
    assert cache.get("k6") is None

    with pytest.raises(ValueError):
        cache.reconfigure(ttl_seconds=-1)
