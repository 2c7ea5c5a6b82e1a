# coding=utf-8
# Copyright 2024 HuggingFace Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
import json
import random
from unittest.mock import MagicMock

import pytest

from smolagents.events import (
    CircuitStateChanged,
    ErrorOccurred,
    FailoverOccurred,
    ModelGenerateCompleted,
    RateLimitHit,
    RecoveryCompleted,
    RetryRequested,
)
from smolagents.models import ChatMessage
from smolagents.monitoring import TokenUsage
from smolagents.reliability import CircuitBreaker, CircuitBreakerRegistry, RateLimiter, ResilientModel, RetryPolicy
from smolagents.utils import AllModelsFailedError, CircuitOpenError, RateLimitExceeded
from tests.fixtures.agents import ScriptedModel


def answer(content="ok"):
    return ChatMessage(role="assistant", content=content, token_usage=TokenUsage(input_tokens=3, output_tokens=1))


def no_jitter_policy(**kwargs):
    return RetryPolicy(**{"base_interval": 1.0, "jitter": 0.0, **kwargs})


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy.default()
        assert policy.max_attempts == 3
        assert policy.backoff == "exponential"
        assert ConnectionError in policy.retryable_errors
        assert RetryPolicy.no_retry().max_attempts == 1

    @pytest.mark.parametrize(
        "backoff, expected_delays",
        [
            ("exponential", [1.0, 2.0, 4.0, 8.0, 10.0]),
            ("linear", [1.0, 1.5, 2.25, 3.375, 5.0625]),
            ("constant", [1.0, 1.0, 1.0, 1.0, 1.0]),
        ],
    )
    def test_backoff_without_jitter(self, backoff, expected_delays):
        policy = no_jitter_policy(backoff=backoff, max_interval=10.0)
        assert [policy.backoff_for(attempt) for attempt in range(1, 6)] == pytest.approx(expected_delays)

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_interval=2.0, jitter=0.5, max_interval=30.0)
        rng = random.Random(0)
        delays = [policy.backoff_for(1, rng=rng) for _ in range(50)]
        assert all(2.0 <= delay <= 3.0 for delay in delays)
        assert len(set(delays)) > 1

    def test_jitter_never_exceeds_max_interval(self):
        policy = RetryPolicy(base_interval=10.0, jitter=1.0, max_interval=10.0)
        assert policy.backoff_for(5, rng=random.Random(1)) == 10.0

    def test_should_retry(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(TimeoutError(), 1)
        assert policy.should_retry(RateLimitExceeded(1.0), 2)
        assert not policy.should_retry(TimeoutError(), 3)
        assert not policy.should_retry(ValueError("bad request"), 1)

    def test_retrying_follows_policy(self):
        policy = no_jitter_policy(max_attempts=3, retryable_errors=(TimeoutError,))
        sleeps = []
        flaky = MagicMock(side_effect=[TimeoutError(), TimeoutError(), "done"])
        assert policy.retrying(sleep=sleeps.append)(flaky) == "done"
        assert sleeps == [1.0, 2.0]

        always_down = MagicMock(side_effect=TimeoutError("down"))
        with pytest.raises(TimeoutError, match="down"):
            policy.retrying(sleep=sleeps.append)(always_down)
        assert always_down.call_count == 3

        bad_request = MagicMock(side_effect=ValueError("bad request"))
        with pytest.raises(ValueError):
            policy.retrying(sleep=sleeps.append)(bad_request)
        assert bad_request.call_count == 1

    def test_rate_limit_wait_covers_retry_after(self):
        policy = no_jitter_policy(max_attempts=2, retryable_errors=(RateLimitExceeded,))
        sleeps = []
        throttled = MagicMock(side_effect=[RateLimitExceeded(7.5), "done"])
        assert policy.retrying(sleep=sleeps.append)(throttled) == "done"
        assert sleeps == [7.5]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"backoff": "fibonacci"},
            {"base_interval": -1.0},
        ],
    )
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_dict(self):
        policy_dict = RetryPolicy(max_attempts=2, retryable_errors=(TimeoutError,)).dict()
        assert policy_dict["max_attempts"] == 2
        assert policy_dict["retryable_errors"] == ["TimeoutError"]


class TestCircuitBreaker:
    def failing_call(self):
        raise ConnectionError("down")

    def test_opens_after_exactly_threshold_failures(self, fake_clock):
        breaker = CircuitBreaker("svc", threshold=3, cool_off=10.0, clock=fake_clock)
        for expected_failures in (1, 2):
            with pytest.raises(ConnectionError):
                breaker.call(self.failing_call)
            assert breaker.state == "closed"
            assert breaker.failure_count == expected_failures
        with pytest.raises(ConnectionError):
            breaker.call(self.failing_call)
        assert breaker.state == "open"
        assert breaker.cool_off_until == fake_clock() + 10.0

        fn = MagicMock()
        with pytest.raises(CircuitOpenError, match="Service unavailable \\(circuit open\\): svc"):
            breaker.call(fn)
        fn.assert_not_called()

    def test_success_resets_consecutive_failures(self, fake_clock):
        breaker = CircuitBreaker("svc", threshold=2, clock=fake_clock)
        with pytest.raises(ConnectionError):
            breaker.call(self.failing_call)
        assert breaker.call(lambda: "fine") == "fine"
        assert breaker.failure_count == 0
        with pytest.raises(ConnectionError):
            breaker.call(self.failing_call)
        assert breaker.state == "closed"

    def test_half_open_trial_success_closes(self, fake_clock):
        transitions = []
        breaker = CircuitBreaker(
            "svc",
            threshold=1,
            cool_off=5.0,
            clock=fake_clock,
            on_state_change=lambda b, from_state, to_state: transitions.append((from_state, to_state)),
        )
        with pytest.raises(ConnectionError):
            breaker.call(self.failing_call)
        fake_clock.advance(5.0)
        assert breaker.state == "half_open"
        assert breaker.call(lambda: 42) == 42
        assert breaker.state == "closed"
        assert transitions == [("closed", "open"), ("open", "half_open"), ("half_open", "closed")]

    def test_half_open_trial_failure_reopens(self, fake_clock):
        breaker = CircuitBreaker("svc", threshold=3, cool_off=5.0, clock=fake_clock)
        for _ in range(3):
            with pytest.raises(ConnectionError):
                breaker.call(self.failing_call)
        fake_clock.advance(6.0)
        with pytest.raises(ConnectionError):
            breaker.call(self.failing_call)
        assert breaker.state == "open"
        assert breaker.cool_off_until == fake_clock() + 5.0

    def test_non_circuit_errors_are_not_counted(self, fake_clock):
        breaker = CircuitBreaker("svc", threshold=1, clock=fake_clock)

        def bad_json():
            return json.loads("{not json")

        with pytest.raises(json.JSONDecodeError):
            breaker.call(bad_json)
        with pytest.raises(RateLimitExceeded):
            breaker.call(MagicMock(side_effect=RateLimitExceeded(1.0)))
        assert breaker.state == "closed"
        assert breaker.failure_count == 0

    def test_reset_and_dict(self, fake_clock):
        breaker = CircuitBreaker("svc", threshold=1, cool_off=5.0, clock=fake_clock)
        with pytest.raises(ConnectionError):
            breaker.call(self.failing_call)
        assert breaker.dict()["state"] == "open"
        breaker.reset()
        assert breaker.dict() == {
            "name": "svc",
            "state": "closed",
            "failure_count": 0,
            "threshold": 1,
            "cool_off": 5.0,
            "cool_off_until": None,
        }

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker("svc", threshold=0)


class TestCircuitBreakerRegistry:
    def test_one_breaker_per_name(self, fake_clock):
        registry = CircuitBreakerRegistry(threshold=1, clock=fake_clock)
        breaker = registry.get("a")
        assert registry.get("a") is breaker
        assert registry.get("b") is not breaker
        assert "a" in registry and "c" not in registry

        with pytest.raises(ConnectionError):
            breaker.call(MagicMock(side_effect=ConnectionError()))
        assert registry.states() == {"a": "open", "b": "closed"}
        registry.reset()
        assert registry.states() == {"a": "closed", "b": "closed"}


class TestRateLimiter:
    def test_bucket_refills_over_time(self, fake_clock):
        limiter = RateLimiter(rate=2.0, capacity=2, clock=fake_clock, sleep=fake_clock.sleep)
        assert limiter.try_acquire()
        assert limiter.try_acquire()
        assert not limiter.try_acquire()
        assert limiter.retry_after() == pytest.approx(0.5)
        fake_clock.advance(0.5)
        assert limiter.try_acquire()

    def test_capacity_caps_accumulation(self, fake_clock):
        limiter = RateLimiter(rate=1.0, capacity=3, clock=fake_clock)
        fake_clock.advance(100)
        assert limiter.available_tokens == 3

    def test_acquire_blocks_until_tokens_available(self, fake_clock):
        limiter = RateLimiter(rate=4.0, capacity=1, clock=fake_clock, sleep=fake_clock.sleep)
        limiter.acquire()
        limiter.acquire()
        assert fake_clock.sleeps == [pytest.approx(0.25)]

    def test_acquire_without_blocking_raises(self, fake_clock):
        limiter = RateLimiter(rate=1.0, capacity=1, service="search", clock=fake_clock)
        limiter.acquire(block=False)
        with pytest.raises(RateLimitExceeded) as e:
            limiter.acquire(block=False)
        assert e.value.service == "search"
        assert e.value.retry_after == pytest.approx(1.0)

    def test_acquire_timeout(self, fake_clock):
        limiter = RateLimiter(rate=0.1, capacity=1, clock=fake_clock, sleep=fake_clock.sleep)
        limiter.acquire()
        with pytest.raises(RateLimitExceeded):
            limiter.acquire(timeout=1.0)
        assert fake_clock.sleeps == []

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            RateLimiter(rate=0)
        with pytest.raises(ValueError):
            RateLimiter(rate=1.0, capacity=1).try_acquire(2)


class TestResilientModel:
    def make_model(self, models, fake_clock, **kwargs):
        kwargs.setdefault("retry_policy", no_jitter_policy(max_attempts=3))
        return ResilientModel(models, clock=fake_clock, sleep=fake_clock.sleep, **kwargs)

    def test_returns_primary_response(self, fake_clock):
        primary = ScriptedModel([answer("primary")], model_id="primary")
        model = self.make_model([primary, ScriptedModel([answer("backup")], model_id="backup")], fake_clock)
        completed = MagicMock()
        model.on(ModelGenerateCompleted, completed)

        output = model.generate([{"role": "user", "content": "Hi"}], stop_sequences=["Observation:"])

        assert output.content == "primary"
        assert model.last_model_id == "primary"
        assert primary.calls[0]["stop_sequences"] == ["Observation:"]
        assert completed.call_args.args[0].token_usage.total_tokens == 4
        assert model.model_id == "primary"

    def test_retries_transient_errors_then_recovers(self, fake_clock):
        primary = ScriptedModel([TimeoutError("slow"), ConnectionError("reset"), answer()], model_id="primary")
        model = self.make_model([primary], fake_clock)
        retries, recoveries = [], []
        model.on_retry(retries.append).on_recovery(recoveries.append)

        assert model.generate([]).content == "ok"

        assert len(primary.calls) == 3
        assert [(event.attempt, event.delay) for event in retries] == [(1, 1.0), (2, 2.0)]
        assert all(event.max_attempts == 3 for event in retries)
        assert fake_clock.sleeps == [1.0, 2.0]
        assert len(recoveries) == 1
        assert recoveries[0].attempts_before_recovery == 2

    def test_attempts_never_exceed_max_attempts(self, fake_clock):
        primary = ScriptedModel([TimeoutError("slow")], model_id="primary")
        model = self.make_model(
            [primary], fake_clock, retry_policy=no_jitter_policy(max_attempts=4), circuit_threshold=4
        )
        with pytest.raises(AllModelsFailedError):
            model.generate([])
        assert len(primary.calls) == 4
        assert fake_clock.sleeps == [1.0, 2.0, 4.0]

    def test_open_circuit_cuts_retries_short(self, fake_clock, caplog):
        primary = ScriptedModel([TimeoutError("slow")], model_id="primary")
        with caplog.at_level("WARNING", logger="smolagents.reliability"):
            model = self.make_model(
                [primary], fake_clock, retry_policy=no_jitter_policy(max_attempts=4), circuit_threshold=2
            )
        assert "circuit_threshold (2) is lower than retry_policy.max_attempts (4)" in caplog.text

        with pytest.raises(AllModelsFailedError) as e:
            model.generate([])

        assert len(primary.calls) == 2
        assert isinstance(e.value.errors[0][1], CircuitOpenError)

    def test_no_warning_when_threshold_covers_retries(self, fake_clock, caplog):
        with caplog.at_level("WARNING", logger="smolagents.reliability"):
            self.make_model(
                [ScriptedModel([answer()], model_id="primary")],
                fake_clock,
                retry_policy=no_jitter_policy(max_attempts=3),
                circuit_threshold=3,
            )
        assert "circuit_threshold" not in caplog.text

    def test_non_retryable_errors_fail_over_immediately(self, fake_clock):
        primary = ScriptedModel([ValueError("invalid request")], model_id="primary")
        backup = ScriptedModel([answer("backup")], model_id="backup")
        model = self.make_model([primary, backup], fake_clock)
        failovers, errors = [], []
        model.on_failover(failovers.append).on_error(errors.append)

        assert model.generate([]).content == "backup"

        assert len(primary.calls) == 1
        assert fake_clock.sleeps == []
        assert [(event.from_model_id, event.to_model_id) for event in failovers] == [("primary", "backup")]
        assert failovers[0].error == "invalid request"
        assert errors[0].recoverable is False
        assert errors[0].context == {"model_id": "primary", "attempt": 1}
        assert model.last_model_id == "backup"

    def test_each_model_tried_once_per_call(self, fake_clock):
        models = [ScriptedModel([TimeoutError(f"model {i} down")], model_id=f"m{i}") for i in range(3)]
        model = self.make_model(models, fake_clock, retry_policy=no_jitter_policy(max_attempts=2))
        failovers = []
        model.on(FailoverOccurred, failovers.append)

        with pytest.raises(AllModelsFailedError) as e:
            model.generate([])

        assert [len(m.calls) for m in models] == [2, 2, 2]
        assert [model_id for model_id, _ in e.value.errors] == ["m0", "m1", "m2"]
        assert "- m2: TimeoutError: model 2 down" in str(e.value)
        # No failover event after the last model
        assert [(event.from_model_id, event.to_model_id) for event in failovers] == [("m0", "m1"), ("m1", "m2")]

    def test_open_circuit_skips_model(self, fake_clock):
        primary = ScriptedModel([ConnectionError("down")], model_id="primary")
        backup = ScriptedModel([answer("backup")], model_id="backup")
        model = self.make_model(
            [primary, backup], fake_clock, retry_policy=no_jitter_policy(max_attempts=2), circuit_threshold=2
        )
        circuit_events = []
        model.on(CircuitStateChanged, circuit_events.append)

        assert model.generate([]).content == "backup"
        assert model.circuit_breakers.get("primary").state == "open"
        assert circuit_events[0].circuit_name == "primary"
        assert circuit_events[0].to_state == "open"
        assert circuit_events[0].error_count == 2

        # The open circuit rejects the primary without calling it
        assert model.generate([]).content == "backup"
        assert len(primary.calls) == 2

    def test_circuit_closes_after_cool_off(self, fake_clock):
        primary = ScriptedModel([ConnectionError("down"), answer("primary is back")], model_id="primary")
        backup = ScriptedModel([answer("backup")], model_id="backup")
        model = self.make_model(
            [primary, backup],
            fake_clock,
            retry_policy=RetryPolicy.no_retry(),
            circuit_threshold=1,
            circuit_cool_off=30.0,
        )
        assert model.generate([]).content == "backup"
        fake_clock.advance(31.0)
        assert model.generate([]).content == "primary is back"
        assert model.circuit_breakers.get("primary").state == "closed"

    def test_rate_limit_error_waits_at_least_retry_after(self, fake_clock):
        primary = ScriptedModel([RateLimitExceeded(5.0, "primary"), answer()], model_id="primary")
        model = self.make_model([primary], fake_clock)
        rate_limit_events = []
        model.on(RateLimitHit, rate_limit_events.append)

        assert model.generate([]).content == "ok"
        assert fake_clock.sleeps == [5.0]
        assert rate_limit_events[0].retry_after == 5.0
        # Rate limiting does not count against the circuit
        assert model.circuit_breakers.get("primary").failure_count == 0

    def test_shared_rate_limiter_throttles_calls(self, fake_clock):
        limiter = RateLimiter(rate=1.0, capacity=1, clock=fake_clock, sleep=fake_clock.sleep)
        model = self.make_model([ScriptedModel([answer()], model_id="primary")], fake_clock, rate_limiter=limiter)
        rate_limit_events = []
        model.on(RateLimitHit, rate_limit_events.append)

        model.generate([])
        model.generate([])

        assert fake_clock.sleeps == [pytest.approx(1.0)]
        assert rate_limit_events[0].service == "primary"

    def test_prefer_healthy_moves_unhealthy_models_last(self, fake_clock):
        primary = ScriptedModel([answer("primary")], model_id="primary")
        primary.is_healthy = MagicMock(return_value=False)
        backup = ScriptedModel([answer("backup")], model_id="backup")
        backup.is_healthy = MagicMock(return_value=True)
        model = self.make_model([primary, backup], fake_clock, prefer_healthy=True, health_cache_duration=15.0)

        assert model.generate([]).content == "backup"
        primary.is_healthy.assert_called_once_with(cache_for=15.0)
        assert primary.calls == []

    def test_model_key_falls_back_to_class_name(self, fake_clock):
        anonymous = ScriptedModel([answer()], model_id=None)
        model = self.make_model([anonymous], fake_clock)
        model.generate([])
        assert model.last_model_id == "ScriptedModel-0"

    def test_builder_methods_and_config(self, fake_clock):
        limiter = RateLimiter(rate=5.0, clock=fake_clock)
        model = self.make_model([ScriptedModel([answer()], model_id="primary")], fake_clock, rate_limiter=limiter)
        returned = model.with_retry(max_attempts=5, backoff="linear").with_fallback(
            ScriptedModel([answer()], model_id="backup")
        )
        assert returned is model
        config = model.reliability_config()
        assert config["retry_policy"]["max_attempts"] == 5
        assert config["retry_policy"]["backoff"] == "linear"
        assert config["models"] == ["primary", "backup"]
        assert config["fallback_count"] == 1
        assert config["rate_limit"] == {"rate": 5.0, "capacity": 5.0}
        assert model.to_dict()["models"][1] == {"class": "ScriptedModel", "data": {"model_id": "backup"}}

    def test_reset_reliability(self, fake_clock):
        primary = ScriptedModel([ConnectionError("down")], model_id="primary")
        primary.clear_health_cache = MagicMock()
        model = self.make_model([primary], fake_clock, retry_policy=RetryPolicy.no_retry(), circuit_threshold=1)
        with pytest.raises(AllModelsFailedError):
            model.generate([])
        model.reset_reliability()
        assert model.circuit_breakers.get("primary").state == "closed"
        primary.clear_health_cache.assert_called_once()

    def test_retry_events_report_errors(self, fake_clock):
        primary = ScriptedModel([TimeoutError("slow"), answer()], model_id="primary")
        model = self.make_model([primary], fake_clock)
        events = []
        model.on("any", events.append)
        model.generate([])
        event_types = [type(event) for event in events]
        assert ErrorOccurred in event_types
        assert RetryRequested in event_types
        assert RecoveryCompleted in event_types
        retry_event = next(event for event in events if isinstance(event, RetryRequested))
        assert retry_event.error == "slow"
        assert retry_event.model_id == "primary"

    def test_requires_at_least_one_model(self):
        with pytest.raises(ValueError):
            ResilientModel([])
