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
事件模块 - 代理运行过程的可观测旁路

代理循环、可靠性层和请求队列在关键节点发出不可变的事件对象，
外部观察者通过 EventEmitter.on() 订阅感兴趣的事件类型，
也可以使用简短的名称（如 "step_complete"、"retry"）注册。

作者: HuggingFace 团队
版本: 1.0
"""

import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from logging import getLogger
from typing import Any, Literal


__all__ = [
    "Event",
    "EventEmitter",
    "StepCompleted",
    "TaskCompleted",
    "ErrorOccurred",
    "RetryRequested",
    "FailoverOccurred",
    "RecoveryCompleted",
    "CircuitStateChanged",
    "RateLimitHit",
    "ModelGenerateRequested",
    "ModelGenerateCompleted",
    "ToolCallRequested",
    "ToolCallCompleted",
    "QueueRequestStarted",
    "QueueRequestCompleted",
    "RequestFailed",
    "RequestRetried",
    "EvaluationCompleted",
    "RepetitionDetected",
]

logger = getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """
    所有事件的基类

    属性:
        id (str): 事件唯一标识（uuid4）
        created_at (float): 事件创建时的时间戳
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()), kw_only=True)
    created_at: float = field(default_factory=time.time, kw_only=True)

    def dict(self) -> dict[str, Any]:
        return {"event": self.__class__.__name__, **asdict(self)}


@dataclass(frozen=True)
class StepCompleted(Event):
    step_number: int
    outcome: Literal["success", "error", "final_answer"]
    observations: str | None = None


@dataclass(frozen=True)
class TaskCompleted(Event):
    outcome: Literal["success", "max_steps", "budget_exceeded", "interrupted", "error"]
    output: Any
    steps_taken: int


@dataclass(frozen=True)
class ErrorOccurred(Event):
    error_class: str
    error_message: str
    context: dict = field(default_factory=dict)
    recoverable: bool = False


@dataclass(frozen=True)
class RetryRequested(Event):
    model_id: str | None
    attempt: int
    max_attempts: int
    delay: float
    error: str


@dataclass(frozen=True)
class FailoverOccurred(Event):
    from_model_id: str | None
    to_model_id: str | None
    error: str
    attempt: int


@dataclass(frozen=True)
class RecoveryCompleted(Event):
    model_id: str | None
    attempts_before_recovery: int


@dataclass(frozen=True)
class CircuitStateChanged(Event):
    circuit_name: str
    from_state: str
    to_state: str
    error_count: int
    cool_off_until: float | None = None


@dataclass(frozen=True)
class RateLimitHit(Event):
    service: str | None
    retry_after: float


@dataclass(frozen=True)
class ModelGenerateRequested(Event):
    model_id: str | None


@dataclass(frozen=True)
class ModelGenerateCompleted(Event):
    model_id: str | None
    token_usage: Any = None


@dataclass(frozen=True)
class ToolCallRequested(Event):
    tool_name: str
    arguments: Any


@dataclass(frozen=True)
class ToolCallCompleted(Event):
    tool_name: str
    result: Any = None
    error: str | None = None


@dataclass(frozen=True)
class QueueRequestStarted(Event):
    request_id: str
    wait_time: float


@dataclass(frozen=True)
class QueueRequestCompleted(Event):
    request_id: str
    duration: float
    queue_depth: int


@dataclass(frozen=True)
class RequestFailed(Event):
    request_id: str
    error: str


@dataclass(frozen=True)
class RequestRetried(Event):
    request_id: str
    attempt: int


@dataclass(frozen=True)
class EvaluationCompleted(Event):
    step_number: int
    status: Literal["done", "continue", "stuck"]
    answer: str | None = None
    reasoning: str | None = None


@dataclass(frozen=True)
class RepetitionDetected(Event):
    step_number: int
    pattern: Literal["tool_call", "code_action", "observation"]
    count: int
    guidance: str


# 便捷名称到事件类的映射
EVENT_NAMES: dict[str, type[Event]] = {
    "any": Event,
    "step_complete": StepCompleted,
    "task_complete": TaskCompleted,
    "error": ErrorOccurred,
    "retry": RetryRequested,
    "failover": FailoverOccurred,
    "recovery": RecoveryCompleted,
    "circuit_state_change": CircuitStateChanged,
    "rate_limit": RateLimitHit,
    "model_generate": ModelGenerateRequested,
    "model_generate_complete": ModelGenerateCompleted,
    "tool_call": ToolCallRequested,
    "tool_complete": ToolCallCompleted,
    "queue_start": QueueRequestStarted,
    "queue_complete": QueueRequestCompleted,
    "request_failed": RequestFailed,
    "request_retried": RequestRetried,
    "evaluation": EvaluationCompleted,
    "repetition": RepetitionDetected,
}


def resolve_event_type(event_type: str | type[Event]) -> type[Event]:
    if isinstance(event_type, str):
        try:
            return EVENT_NAMES[event_type]
        except KeyError:
            raise ValueError(
                f"Unknown event name '{event_type}', should be one of: {', '.join(EVENT_NAMES)}."
            ) from None
    if isinstance(event_type, type) and issubclass(event_type, Event):
        return event_type
    raise TypeError(f"Expected an Event subclass or an event name, got {event_type!r}")


class EventEmitter:
    """
    事件发布混入类

    处理器按注册顺序同步执行；对某个事件类注册的处理器也会收到其子类事件，
    因此 on(Event, handler) 可以订阅全部事件。处理器抛出的异常只记录日志，
    不会中断发布者。
    """

    def _handlers(self) -> dict[type[Event], list[Callable[[Event], Any]]]:
        handlers = self.__dict__.get("_event_handlers")
        if handlers is None:
            handlers = self.__dict__.setdefault("_event_handlers", {})
        return handlers

    def _handlers_lock(self) -> threading.Lock:
        lock = self.__dict__.get("_event_handlers_lock")
        if lock is None:
            lock = self.__dict__.setdefault("_event_handlers_lock", threading.Lock())
        return lock

    def on(self, event_type: str | type[Event], handler: Callable[[Event], Any]):
        """
        注册事件处理器

        参数:
            event_type (str | type[Event]): 事件类或其简称，如 "step_complete"
            handler (Callable[[Event], Any]): 接收事件对象的回调

        返回:
            self，便于链式调用
        """
        resolved = resolve_event_type(event_type)
        with self._handlers_lock():
            self._handlers().setdefault(resolved, []).append(handler)
        return self

    def off(self, event_type: str | type[Event], handler: Callable[[Event], Any] | None = None):
        resolved = resolve_event_type(event_type)
        with self._handlers_lock():
            handlers = self._handlers()
            if handler is None:
                handlers.pop(resolved, None)
            elif handler in handlers.get(resolved, []):
                handlers[resolved].remove(handler)
        return self

    def clear_handlers(self):
        with self._handlers_lock():
            self._handlers().clear()

    def has_handlers(self, event_type: str | type[Event]) -> bool:
        resolved = resolve_event_type(event_type)
        return any(issubclass(resolved, registered) and hs for registered, hs in self._handlers().items())

    def emit(self, event: Event) -> Event:
        with self._handlers_lock():
            matching = [
                handler
                for registered, handlers in self._handlers().items()
                if isinstance(event, registered)
                for handler in handlers
            ]
        for handler in matching:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed on %s", handler, type(event).__name__)
        return event
