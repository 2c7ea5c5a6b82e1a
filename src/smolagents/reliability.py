#!/usr/bin/env python
# coding=utf-8

# Copyright 2024 The HuggingFace Inc. team. All rights reserved.
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

"""
可靠性模块 - 模型调用的重试、熔断、限流与回退

组件：
- RetryPolicy: 有上限的重试与退避（指数 / 线性 / 常数，附加随机抖动）
- CircuitBreaker: 按服务名称的熔断器（closed / open / half_open）
- CircuitBreakerRegistry: 服务名称到熔断器的注册表
- RateLimiter: 令牌桶限流
- ResilientModel: 把以上组件组合到一条有序的回退模型链上

调用 ResilientModel.generate() 时，链上的每个模型最多被尝试一轮：
先经过熔断器，再由 tenacity 按重试策略重试；重试耗尽后切换到下一个模型，
全部失败时抛出聚合了所有错误的 AllModelsFailedError。

作者: HuggingFace 团队
版本: 1.0
"""

import importlib.util
import json
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING, Any, Literal

import requests
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from .events import (
    CircuitStateChanged,
    ErrorOccurred,
    EventEmitter,
    FailoverOccurred,
    ModelGenerateCompleted,
    ModelGenerateRequested,
    RateLimitHit,
    RecoveryCompleted,
    RetryRequested,
)
from .local_python_executor import InterpreterError
from .models import ChatMessage, Model
from .monitoring import AgentLogger, LogLevel
from .utils import AllModelsFailedError, CircuitOpenError, RateLimitExceeded


if TYPE_CHECKING:
    from .tools import Tool


__all__ = ["RetryPolicy", "CircuitBreaker", "CircuitBreakerRegistry", "RateLimiter", "ResilientModel"]

logger = getLogger(__name__)


BACKOFF_MULTIPLIERS = {
    "exponential": 2.0,
    "linear": 1.5,
    "constant": 1.0,
}


def default_retryable_errors() -> tuple[type[BaseException], ...]:
    """
    默认可重试的异常类型：网络连接、超时与限流

    安装了 openai 时，同时包含其连接、超时、限流与服务端错误。
    """
    errors: list[type[BaseException]] = [
        ConnectionError,
        TimeoutError,
        RateLimitExceeded,
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
    ]
    if importlib.util.find_spec("openai") is not None:
        import openai

        errors += [openai.APIConnectionError, openai.APITimeoutError, openai.RateLimitError, openai.InternalServerError]
    return tuple(errors)


@dataclass
class RetryPolicy:
    """
    重试策略

    第 n 次失败后的等待时间为 min(max_interval, base_interval * multiplier ** (n - 1))，
    再加上 [0, jitter * delay] 之间的随机抖动（仍不超过 max_interval）。

    属性:
        max_attempts (int): 单个模型的最大尝试次数（含首次调用）
        base_interval (float): 首次重试前的等待秒数
        max_interval (float): 等待时间上限
        backoff (str): "exponential"（2.0）、"linear"（1.5）或 "constant"（1.0）
        jitter (float): 抖动比例，0 表示不抖动
        retryable_errors (tuple[type[BaseException], ...]): 可重试的异常类型
    """

    max_attempts: int = 3
    base_interval: float = 1.0
    max_interval: float = 30.0
    backoff: Literal["exponential", "linear", "constant"] = "exponential"
    jitter: float = 0.5
    retryable_errors: tuple[type[BaseException], ...] = field(default_factory=default_retryable_errors)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.backoff not in BACKOFF_MULTIPLIERS:
            raise ValueError(f"Unknown backoff '{self.backoff}', should be one of: {', '.join(BACKOFF_MULTIPLIERS)}")
        if self.base_interval < 0 or self.max_interval < 0 or self.jitter < 0:
            raise ValueError("Intervals and jitter must be non-negative")
        self.retryable_errors = tuple(self.retryable_errors)

    @classmethod
    def default(cls) -> "RetryPolicy":
        return cls()

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1)

    @property
    def multiplier(self) -> float:
        return BACKOFF_MULTIPLIERS[self.backoff]

    def is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, self.retryable_errors)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """
        判断第 attempt 次尝试失败后是否还能再试

        参数:
            error (BaseException): 本次失败的异常
            attempt (int): 刚刚失败的尝试序号，从 1 开始
        """
        return attempt < self.max_attempts and self.is_retryable(error)

    def wait_strategy(self, rng: random.Random | None = None) -> "wait_backoff":
        return wait_backoff(self, rng=rng)

    def backoff_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """第 attempt 次失败后的等待秒数"""
        retry_state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        retry_state.attempt_number = attempt
        return self.wait_strategy(rng)(retry_state)

    def retrying(self, sleep: Callable[[float], Any] = time.sleep, **kwargs) -> Retrying:
        """
        按本策略构造 tenacity.Retrying

        参数:
            sleep (Callable[[float], Any]): 退避等待函数
            **kwargs: 透传给 Retrying，例如 before_sleep
        """
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait_strategy(),
            retry=retry_if_exception_type(self.retryable_errors),
            sleep=sleep,
            reraise=True,
            **kwargs,
        )

    def dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_interval": self.base_interval,
            "max_interval": self.max_interval,
            "backoff": self.backoff,
            "jitter": self.jitter,
            "retryable_errors": [error.__name__ for error in self.retryable_errors],
        }


class wait_backoff(wait_base):
    """
    tenacity 等待策略：wait_exponential 给出基础退避，再叠加与其成比例的抖动，总和不超过 max_interval

    上一次失败是 RateLimitExceeded 时，至少等待其 retry_after 秒。
    """

    def __init__(self, policy: RetryPolicy, rng: random.Random | None = None):
        self.policy = policy
        self.rng = rng or random
        self.exponential = wait_exponential(
            multiplier=policy.base_interval, exp_base=policy.multiplier, max=policy.max_interval
        )

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self.exponential(retry_state)
        if self.policy.jitter:
            delay = min(self.policy.max_interval, delay + self.rng.uniform(0, self.policy.jitter * delay))
        outcome = retry_state.outcome
        if outcome is not None and isinstance(outcome.exception(), RateLimitExceeded):
            delay = max(delay, outcome.exception().retry_after)
        return delay


# 这些错误说明请求本身有问题或只是被限流，不代表服务不可用
NON_CIRCUIT_ERRORS: tuple[type[BaseException], ...] = (json.JSONDecodeError, RateLimitExceeded, InterpreterError)


class CircuitBreaker:
    """
    熔断器

    - closed: 正常放行；连续失败达到 threshold 次后转为 open
    - open: 在 cool_off 秒内直接拒绝调用（抛出 CircuitOpenError）
    - half_open: 冷却结束后放行一次试探调用，成功则关闭，失败则重新打开

    参数:
        name (str): 服务名称
        threshold (int, 默认 3): 触发熔断的连续失败次数
        cool_off (float, 默认 30.0): 打开状态持续的秒数
        clock (Callable[[], float]): 单调时钟，测试中可替换
        on_state_change (Callable, 可选): 状态变化回调，签名为 (breaker, from_state, to_state)
        non_circuit_errors (tuple, 可选): 不计入失败次数的异常类型
        logger (AgentLogger, 可选): 构造 CircuitOpenError 时使用的日志记录器
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        threshold: int = 3,
        cool_off: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Callable[["CircuitBreaker", str, str], Any] | None = None,
        non_circuit_errors: tuple[type[BaseException], ...] = NON_CIRCUIT_ERRORS,
        logger: AgentLogger | None = None,
    ):
        if threshold < 1:
            raise ValueError(f"threshold must be at least 1, got {threshold}")
        self.name = name
        self.threshold = threshold
        self.cool_off = cool_off
        self.clock = clock
        self.on_state_change = on_state_change
        self.non_circuit_errors = non_circuit_errors
        self.logger = logger or AgentLogger(level=LogLevel.ERROR)
        self._state = self.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._lock = threading.RLock()

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == self.OPEN and self._cool_off_elapsed():
                return self.HALF_OPEN
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def cool_off_until(self) -> float | None:
        return None if self._opened_at is None else self._opened_at + self.cool_off

    def _cool_off_elapsed(self) -> bool:
        return self._opened_at is not None and self.clock() >= self._opened_at + self.cool_off

    def _transition(self, to_state: str):
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        logger.info("Circuit '%s' %s -> %s (failures: %d)", self.name, from_state, to_state, self._failure_count)
        if self.on_state_change is not None:
            self.on_state_change(self, from_state, to_state)

    def _before_call(self):
        with self._lock:
            if self._state == self.OPEN:
                if not self._cool_off_elapsed():
                    raise CircuitOpenError(self.name, self.logger, cool_off_until=self.cool_off_until)
                self._transition(self.HALF_OPEN)
            if self._state == self.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name, self.logger, cool_off_until=self.cool_off_until)
                self._trial_in_flight = True

    def record_success(self):
        with self._lock:
            self._trial_in_flight = False
            self._failure_count = 0
            self._opened_at = None
            self._transition(self.CLOSED)

    def record_failure(self):
        with self._lock:
            self._trial_in_flight = False
            self._failure_count += 1
            if self._state == self.HALF_OPEN or self._failure_count >= self.threshold:
                self._opened_at = self.clock()
                self._transition(self.OPEN)

    def call(self, fn: Callable, *args, **kwargs):
        """
        经由熔断器调用 fn

        异常:
            CircuitOpenError: 熔断器处于打开状态，fn 没有被调用
            其他异常: fn 抛出的原始异常
        """
        self._before_call()
        try:
            result = fn(*args, **kwargs)
        except self.non_circuit_errors:
            with self._lock:
                self._trial_in_flight = False
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self):
        with self._lock:
            self._failure_count = 0
            self._opened_at = None
            self._trial_in_flight = False
            self._transition(self.CLOSED)

    def dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state,
            "failure_count": self._failure_count,
            "threshold": self.threshold,
            "cool_off": self.cool_off,
            "cool_off_until": self.cool_off_until,
        }


class CircuitBreakerRegistry:
    """Keeps exactly one circuit breaker per service name."""

    def __init__(self, **breaker_kwargs):
        self.breaker_kwargs = breaker_kwargs
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str, **kwargs) -> CircuitBreaker:
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(name, **{**self.breaker_kwargs, **kwargs})
            return self._breakers[name]

    def reset(self, name: str | None = None):
        with self._lock:
            breakers = list(self._breakers.values()) if name is None else [self._breakers[name]]
        for breaker in breakers:
            breaker.reset()

    def states(self) -> dict[str, str]:
        return {name: breaker.state for name, breaker in self._breakers.items()}

    def __contains__(self, name: str) -> bool:
        return name in self._breakers


class RateLimiter:
    """
    令牌桶限流器

    令牌以 rate 个/秒的速度连续补充，最多积累 capacity 个。

    参数:
        rate (float): 每秒补充的令牌数
        capacity (float, 可选): 桶容量，默认 max(1, rate)
        service (str, 可选): 服务名称，用于异常信息
        clock (Callable[[], float]): 单调时钟
        sleep (Callable[[float], Any]): 阻塞等待函数
    """

    def __init__(
        self,
        rate: float,
        capacity: float | None = None,
        service: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate}")
        self.rate = rate
        self.capacity = capacity if capacity is not None else max(1.0, rate)
        self.service = service
        self.clock = clock
        self.sleep = sleep
        self._tokens = float(self.capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self):
        now = self.clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last_refill = now

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def try_acquire(self, tokens: float = 1) -> bool:
        if tokens > self.capacity:
            raise ValueError(f"Cannot acquire {tokens} tokens from a bucket of capacity {self.capacity}")
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def retry_after(self, tokens: float = 1) -> float:
        with self._lock:
            self._refill()
            deficit = tokens - self._tokens
        return max(0.0, deficit / self.rate)

    def acquire(self, tokens: float = 1, block: bool = True, timeout: float | None = None):
        """
        取得令牌，必要时等待

        异常:
            RateLimitExceeded: block 为 False，或等待时间会超过 timeout
        """
        waited = 0.0
        while not self.try_acquire(tokens):
            wait = self.retry_after(tokens)
            if not block or (timeout is not None and waited + wait > timeout):
                raise RateLimitExceeded(wait, self.service)
            self.sleep(wait)
            waited += wait

    def reset(self):
        with self._lock:
            self._tokens = float(self.capacity)
            self._last_refill = self.clock()


class ResilientModel(Model, EventEmitter):
    """
    带回退链的可靠模型包装

    参数:
        models (list[Model]): 有序的模型链，第一个为主模型
        retry_policy (RetryPolicy, 可选): 每个模型使用的重试策略，默认 RetryPolicy.default()
        circuit_threshold (int, 默认 3): 每个模型熔断器的连续失败阈值
        circuit_cool_off (float, 默认 30.0): 熔断冷却秒数
        rate_limiter (RateLimiter, 可选): 所有调用共享的令牌桶
        prefer_healthy (bool, 默认 False): 调用前把健康检查失败的模型移到链尾
        health_cache_duration (float, 默认 60.0): 健康检查结果的缓存秒数
        logger (AgentLogger, 可选): 错误输出使用的日志记录器
        clock (Callable[[], float]): 熔断器使用的时钟
        sleep (Callable[[float], Any]): 退避与限流等待函数，测试中可替换

    示例:
    ```python
    >>> model = ResilientModel(
    ...     [OpenAIServerModel("gpt-4o"), InferenceClientModel("Qwen/Qwen2.5-Coder-32B-Instruct")],
    ...     retry_policy=RetryPolicy(max_attempts=2),
    ... )
    >>> model.on("failover", lambda event: print(event.from_model_id, "->", event.to_model_id))
    >>> model.generate([{"role": "user", "content": "Hello"}])
    ```
    """

    def __init__(
        self,
        models: list[Model],
        retry_policy: RetryPolicy | None = None,
        circuit_threshold: int = 3,
        circuit_cool_off: float = 30.0,
        rate_limiter: RateLimiter | None = None,
        prefer_healthy: bool = False,
        health_cache_duration: float = 60.0,
        logger: AgentLogger | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        if not models:
            raise ValueError("ResilientModel needs at least one model")
        primary = models[0]
        super().__init__(
            model_id=primary.model_id,
            tool_name_key=primary.tool_name_key,
            tool_arguments_key=primary.tool_arguments_key,
        )
        self.models = list(models)
        self.retry_policy = retry_policy or RetryPolicy.default()
        self.circuit_threshold = circuit_threshold
        self.circuit_cool_off = circuit_cool_off
        self.rate_limiter = rate_limiter
        self.prefer_healthy = prefer_healthy
        self.health_cache_duration = health_cache_duration
        self.logger = logger or AgentLogger(level=LogLevel.ERROR)
        self._sleep = sleep
        self.circuit_breakers = CircuitBreakerRegistry(
            threshold=circuit_threshold,
            cool_off=circuit_cool_off,
            clock=clock,
            on_state_change=self._on_circuit_state_change,
            logger=self.logger,
        )
        self.last_model_id: str | None = None
        self._check_retry_budget()

    @property
    def primary(self) -> Model:
        return self.models[0]

    def with_retry(self, **policy_kwargs) -> "ResilientModel":
        policy_kwargs.setdefault("retryable_errors", self.retry_policy.retryable_errors)
        self.retry_policy = RetryPolicy(**{**self.retry_policy.dict(), **policy_kwargs})
        self._check_retry_budget()
        return self

    def with_fallback(self, *models: Model) -> "ResilientModel":
        self.models.extend(models)
        return self

    def on_retry(self, handler):
        return self.on(RetryRequested, handler)

    def on_failover(self, handler):
        return self.on(FailoverOccurred, handler)

    def on_recovery(self, handler):
        return self.on(RecoveryCompleted, handler)

    def on_error(self, handler):
        return self.on(ErrorOccurred, handler)

    @staticmethod
    def model_key(model: Model, index: int) -> str:
        return model.model_id or f"{type(model).__name__}-{index}"

    def _on_circuit_state_change(self, breaker: CircuitBreaker, from_state: str, to_state: str):
        self.emit(
            CircuitStateChanged(
                circuit_name=breaker.name,
                from_state=from_state,
                to_state=to_state,
                error_count=breaker.failure_count,
                cool_off_until=breaker.cool_off_until if to_state == CircuitBreaker.OPEN else None,
            )
        )

    def _ordered_chain(self) -> list[tuple[str, Model]]:
        chain = [(self.model_key(model, index), model) for index, model in enumerate(self.models)]
        if not self.prefer_healthy:
            return chain
        healthy, unhealthy = [], []
        for key, model in chain:
            is_healthy = getattr(model, "is_healthy", None)
            if is_healthy is None or is_healthy(cache_for=self.health_cache_duration):
                healthy.append((key, model))
            else:
                logger.info("Deprioritizing unhealthy model %s", key)
                unhealthy.append((key, model))
        return healthy + unhealthy

    def _wait_for_rate_limit(self, model_key: str):
        if self.rate_limiter is None:
            return
        while not self.rate_limiter.try_acquire():
            retry_after = self.rate_limiter.retry_after()
            self.emit(RateLimitHit(service=model_key, retry_after=retry_after))
            self._sleep(retry_after)

    def _check_retry_budget(self):
        if self.circuit_threshold < self.retry_policy.max_attempts:
            logger.warning(
                "circuit_threshold (%d) is lower than retry_policy.max_attempts (%d): the circuit will open "
                "and cut retries short after %d consecutive failures",
                self.circuit_threshold,
                self.retry_policy.max_attempts,
                self.circuit_threshold,
            )

    def _attempt(self, model_key: str, model: Model, breaker: CircuitBreaker, attempt: int, messages, **kwargs):
        self._wait_for_rate_limit(model_key)
        self.emit(ModelGenerateRequested(model_id=model_key))
        try:
            return breaker.call(model.generate, messages, **kwargs)
        except CircuitOpenError:
            raise
        except Exception as e:
            self.emit(
                ErrorOccurred(
                    error_class=type(e).__name__,
                    error_message=str(e),
                    context={"model_id": model_key, "attempt": attempt},
                    recoverable=self.retry_policy.should_retry(e, attempt),
                )
            )
            raise

    def _before_retry(self, model_key: str, retry_state: RetryCallState):
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep
        if isinstance(error, RateLimitExceeded):
            self.emit(RateLimitHit(service=model_key, retry_after=error.retry_after))
        self.emit(
            RetryRequested(
                model_id=model_key,
                attempt=retry_state.attempt_number,
                max_attempts=self.retry_policy.max_attempts,
                delay=delay,
                error=str(error),
            )
        )
        logger.info("Retrying %s in %.2fs (attempt %d failed: %s)", model_key, delay, retry_state.attempt_number, error)

    def generate(
        self,
        messages: list[dict[str, str | list[dict]] | ChatMessage],
        stop_sequences: list[str] | None = None,
        response_format: dict[str, str] | None = None,
        tools_to_call_from: list["Tool"] | None = None,
        **kwargs,
    ) -> ChatMessage:
        """
        依次尝试链上的模型

        返回:
            ChatMessage: 第一个成功模型的输出

        异常:
            AllModelsFailedError: 所有模型都失败
        """
        errors: list[tuple[str, Exception]] = []
        total_attempts = 0
        chain = self._ordered_chain()
        for position, (model_key, model) in enumerate(chain):
            breaker = self.circuit_breakers.get(model_key)
            response: ChatMessage | None = None
            last_error: Exception | None = None
            retrying = self.retry_policy.retrying(
                sleep=self._sleep, before_sleep=lambda retry_state, key=model_key: self._before_retry(key, retry_state)
            )
            try:
                for attempt in retrying:
                    with attempt:
                        total_attempts += 1
                        response = self._attempt(
                            model_key,
                            model,
                            breaker,
                            attempt.retry_state.attempt_number,
                            messages,
                            stop_sequences=stop_sequences,
                            response_format=response_format,
                            tools_to_call_from=tools_to_call_from,
                            **kwargs,
                        )
            except Exception as e:
                last_error = e
            else:
                if total_attempts > 1:
                    self.emit(RecoveryCompleted(model_id=model_key, attempts_before_recovery=total_attempts - 1))
                self.emit(ModelGenerateCompleted(model_id=model_key, token_usage=response.token_usage))
                self.last_model_id = model_key
                return response

            errors.append((model_key, last_error))
            if position + 1 < len(chain):
                next_key = chain[position + 1][0]
                logger.warning("Model %s failed (%s), failing over to %s", model_key, last_error, next_key)
                self.emit(
                    FailoverOccurred(
                        from_model_id=model_key,
                        to_model_id=next_key,
                        error=str(last_error),
                        attempt=total_attempts,
                    )
                )
        raise AllModelsFailedError(errors, self.logger)

    def reliability_config(self) -> dict[str, Any]:
        return {
            "retry_policy": self.retry_policy.dict(),
            "models": [self.model_key(model, index) for index, model in enumerate(self.models)],
            "fallback_count": len(self.models) - 1,
            "circuit_threshold": self.circuit_threshold,
            "circuit_cool_off": self.circuit_cool_off,
            "rate_limit": None
            if self.rate_limiter is None
            else {"rate": self.rate_limiter.rate, "capacity": self.rate_limiter.capacity},
            "prefer_healthy": self.prefer_healthy,
            "health_cache_duration": self.health_cache_duration,
        }

    def reset_reliability(self):
        self.circuit_breakers.reset()
        if self.rate_limiter is not None:
            self.rate_limiter.reset()
        for model in self.models:
            clear_health_cache = getattr(model, "clear_health_cache", None)
            if clear_health_cache is not None:
                clear_health_cache()

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "models": [{"class": type(model).__name__, "data": model.to_dict()} for model in self.models],
            "reliability": self.reliability_config(),
        }
