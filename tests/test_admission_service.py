"""Tests for the fixed-window admission engine."""

import threading
from unittest.mock import Mock

import pytest

from throttle.adapters.counter_store.in_memory import InMemoryCounterStore
from throttle.core.errors import InvalidRateSpecError, StoreUnavailableError
from throttle.services.admission_service import (
    AdmissionEngine,
    DecisionReason,
    FailurePolicy,
    build_admission_engine,
)
from throttle.services.key_resolver import StaticKeyResolver
from throttle.services.rate_spec import RateSpec


def _engine(fake_time, store=None, rate: str = "10/second", **kwargs) -> AdmissionEngine:
    return build_admission_engine(
        store=store or InMemoryCounterStore(clock=fake_time.time),
        key="ip",
        rate=rate,
        clock=fake_time.time,
        **kwargs,
    )


def _unit(ip: str) -> dict:
    return {"ip": ip}


def _run_concurrently(engine: AdmissionEngine, units: list) -> list:
    barrier = threading.Barrier(len(units))
    decisions: list = [None] * len(units)

    def _worker(idx: int) -> None:
        barrier.wait()
        decisions[idx] = engine.decide(units[idx])

    threads = [threading.Thread(target=_worker, args=(i,)) for i in range(len(units))]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return decisions


class TestWindowCounting:
    def test_admits_up_to_limit_then_denies(self, fake_time) -> None:
        engine = _engine(fake_time, rate="3/minute")

        decisions = [engine.decide(_unit("ip1")) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.current_count for d in decisions] == [1, 2, 3, 4]
        assert decisions[2].remaining == 0
        assert decisions[3].reason is DecisionReason.OVER_LIMIT
        assert decisions[3].limit == 3

    def test_denied_decision_carries_retry_metadata(self, fake_time) -> None:
        fake_time.current = 1_000.0  # 1000s is 16 full minutes + 40s
        engine = _engine(fake_time, rate="1/minute")

        engine.decide(_unit("ip1"))
        denied = engine.decide(_unit("ip1"))

        assert denied.allowed is False
        assert denied.reset_at == 1_020
        assert denied.retry_after_seconds == 20

    def test_burst_admits_exactly_limit(self, fake_time) -> None:
        engine = _engine(fake_time)

        decisions = _run_concurrently(engine, [_unit("ip1")] * 12)

        assert sum(d.allowed for d in decisions) == 10
        assert sum(not d.allowed for d in decisions) == 2
        assert sorted(d.current_count for d in decisions) == list(range(1, 13))

    def test_window_resets_after_boundary(self, fake_time) -> None:
        engine = _engine(fake_time)

        first = _run_concurrently(engine, [_unit("ip1")] * 9)
        fake_time.advance(1.1)
        second = _run_concurrently(engine, [_unit("ip1")] * 12)
        fake_time.advance(1.1)
        third = _run_concurrently(engine, [_unit("ip1")] * 9)

        assert all(d.allowed for d in first)
        assert sum(d.allowed for d in second) == 10
        assert sum(not d.allowed for d in second) == 2
        assert all(d.allowed for d in third)

    def test_same_window_is_cumulative(self, fake_time) -> None:
        engine = _engine(fake_time)

        _run_concurrently(engine, [_unit("ip1")] * 9)
        decisions = _run_concurrently(engine, [_unit("ip1")] * 12)

        assert sum(d.allowed for d in decisions) == 1

    def test_distinct_keys_do_not_share_counters(self, fake_time) -> None:
        engine = _engine(fake_time)
        units = [_unit("a")] * 5 + [_unit("b")] * 12 + [_unit("c")] * 10

        decisions = _run_concurrently(engine, units)

        denied = [units[i]["ip"] for i, d in enumerate(decisions) if not d.allowed]
        assert sum(d.allowed for d in decisions) == 25
        assert denied == ["b", "b"]

    def test_fixed_windows_allow_double_burst_across_boundary(self, fake_time) -> None:
        fake_time.current = 1_000.9
        engine = _engine(fake_time, rate="5/second")

        tail = [engine.decide(_unit("ip1")) for _ in range(5)]
        fake_time.advance(0.2)
        head = [engine.decide(_unit("ip1")) for _ in range(5)]

        assert all(d.allowed for d in tail + head)


class TestWindowKeys:
    def test_window_key_format(self, fake_time) -> None:
        store = Mock()
        store.increment_and_get_with_ttl.return_value = 1
        fake_time.current = 1_234.567
        engine = _engine(fake_time, store=store)

        engine.decide(_unit("ip1"))

        store.increment_and_get_with_ttl.assert_called_once_with("ip1:1234", 1000)

    def test_window_key_uses_prefix(self, fake_time) -> None:
        store = Mock()
        store.increment_and_get_with_ttl.return_value = 1
        fake_time.current = 120.0
        engine = _engine(fake_time, store=store, rate="2/minute", key_prefix="ratelimit")

        engine.decide(_unit("ip1"))

        store.increment_and_get_with_ttl.assert_called_once_with("ratelimit:ip1:2", 60_000)


class TestFailurePolicies:
    def test_unresolvable_key_denied_by_default(self, fake_time) -> None:
        store = Mock()
        engine = _engine(fake_time, store=store)

        decision = engine.decide({})

        assert decision.allowed is False
        assert decision.reason is DecisionReason.KEY_UNRESOLVED
        assert decision.current_count == 0
        store.increment_and_get_with_ttl.assert_not_called()

    def test_unresolvable_key_admitted_when_fail_open(self, fake_time) -> None:
        engine = _engine(fake_time, key_error_policy="open")

        decision = engine.decide({})

        assert decision.allowed is True
        assert decision.reason is DecisionReason.KEY_UNRESOLVED

    def test_store_outage_denied_by_default(self, fake_time) -> None:
        store = Mock()
        store.increment_and_get_with_ttl.side_effect = StoreUnavailableError(
            code="store_unavailable", message="down"
        )
        engine = _engine(fake_time, store=store)

        decision = engine.decide(_unit("ip1"))

        assert decision.allowed is False
        assert decision.reason is DecisionReason.STORE_UNAVAILABLE

    def test_store_outage_admitted_when_fail_open(self, fake_time) -> None:
        store = Mock()
        store.increment_and_get_with_ttl.side_effect = StoreUnavailableError(
            code="store_unavailable", message="down"
        )
        engine = _engine(fake_time, store=store, store_error_policy=FailurePolicy.OPEN)

        decision = engine.decide(_unit("ip1"))

        assert decision.allowed is True
        assert decision.reason is DecisionReason.STORE_UNAVAILABLE

    def test_apply_failure_policy_rejects_non_failure_reason(self, fake_time) -> None:
        engine = _engine(fake_time)

        with pytest.raises(ValueError):
            engine.apply_failure_policy(DecisionReason.OVER_LIMIT)


class TestConfiguration:
    def test_invalid_rate_refuses_to_build(self, fake_time) -> None:
        with pytest.raises(InvalidRateSpecError):
            _engine(fake_time, rate="10/fortnight")

    def test_invalid_policy_refuses_to_build(self, fake_time) -> None:
        with pytest.raises(ValueError):
            _engine(fake_time, store_error_policy="sometimes")

    def test_identical_engines_on_shared_store_agree(self, fake_time) -> None:
        store_a = InMemoryCounterStore(clock=fake_time.time)
        store_b = InMemoryCounterStore(clock=fake_time.time)
        engine_a = _engine(fake_time, store=store_a, rate="2/second")
        engine_b = _engine(fake_time, store=store_b, rate="2/second")

        sequence = [("x", 0.0), ("x", 0.1), ("y", 0.1), ("x", 0.2), ("x", 1.0), ("y", 0.3)]
        results_a, results_b = [], []
        for ip, step in sequence:
            fake_time.advance(step)
            results_a.append(engine_a.decide(_unit(ip)))
            results_b.append(engine_b.decide(_unit(ip)))

        assert results_a == results_b

    def test_engines_sharing_one_store_share_counts(self, fake_time) -> None:
        store = InMemoryCounterStore(clock=fake_time.time)
        replica_1 = _engine(fake_time, store=store, rate="3/second")
        replica_2 = _engine(fake_time, store=store, rate="3/second")

        outcomes = [
            replica_1.decide(_unit("ip1")).allowed,
            replica_2.decide(_unit("ip1")).allowed,
            replica_1.decide(_unit("ip1")).allowed,
            replica_2.decide(_unit("ip1")).allowed,
        ]

        assert outcomes == [True, True, True, False]

    def test_direct_construction(self, fake_time) -> None:
        engine = AdmissionEngine(
            store=InMemoryCounterStore(clock=fake_time.time),
            key_resolver=StaticKeyResolver("user"),
            rate=RateSpec(max_count=1, window_seconds=60),
            clock=fake_time.time,
        )

        assert engine.decide({"user": "u1"}).allowed is True
        assert engine.decide({"user": "u1"}).allowed is False
        assert engine.rate == RateSpec(max_count=1, window_seconds=60)
