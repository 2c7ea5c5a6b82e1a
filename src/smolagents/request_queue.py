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
请求队列模块 - 串行化模型请求

适用于同一时刻只能处理一个请求的模型服务（如本地推理服务器）。
一个后台工作线程独占模型，按优先级依次处理请求；
调用方通过 concurrent.futures.Future 获取结果。

功能：
- 高优先级请求插到普通请求之前，同一优先级内先进先出
- 队列深度上限，满时抛出 QueueFullError
- 最近 100 次等待时间的统计
- 可选的死信队列，保存失败的请求以便重试

作者: HuggingFace 团队
版本: 1.0
"""

import itertools
import queue
import threading
import time
import uuid
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from logging import getLogger
from typing import Any, Literal

from .events import EventEmitter, QueueRequestCompleted, QueueRequestStarted, RequestFailed, RequestRetried
from .models import ChatMessage, Model
from .monitoring import AgentLogger, LogLevel
from .utils import QueueFullError


__all__ = ["RequestQueue", "QueuedRequest", "QueueStats", "FailedRequest"]

logger = getLogger(__name__)

PRIORITY_RANKS = {"high": 0, "normal": 1}
# 关闭信号排在所有请求之后，保证已排队的请求先被处理
_SHUTDOWN_RANK = 99
WAIT_SAMPLES = 100


@dataclass
class QueuedRequest:
    id: str
    priority: Literal["high", "normal"]
    messages: list
    kwargs: dict
    future: Future
    queued_at: float = field(default_factory=time.monotonic)
    attempts: int = 1

    @property
    def wait_time(self) -> float:
        return time.monotonic() - self.queued_at

    @property
    def high_priority(self) -> bool:
        return self.priority == "high"


@dataclass(frozen=True)
class QueueStats:
    depth: int
    processing: bool
    total_processed: int
    avg_wait_time: float
    max_wait_time: float

    def dict(self) -> dict[str, Any]:
        return {
            "depth": self.depth,
            "processing": self.processing,
            "total_processed": self.total_processed,
            "avg_wait_time": round(self.avg_wait_time, 2),
            "max_wait_time": round(self.max_wait_time, 2),
        }


@dataclass(frozen=True)
class FailedRequest:
    """
    死信队列中的失败请求

    属性:
        request (QueuedRequest): 原始请求
        error (str): 异常类名
        error_message (str): 异常信息
        attempts (int): 已尝试次数
        failed_at (float): 失败时间戳
    """

    request: QueuedRequest
    error: str
    error_message: str
    attempts: int
    failed_at: float = field(default_factory=time.time)

    @property
    def age(self) -> float:
        return time.time() - self.failed_at

    def dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request.id,
            "error": self.error,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "failed_at": self.failed_at,
        }


class RequestQueue(EventEmitter):
    """
    串行处理模型请求的队列

    参数:
        model (Model): 被串行化访问的模型
        max_depth (int, 可选): 等待中请求的上限，None 表示不限
        priority_enabled (bool, 默认 True): 为 False 时忽略 priority，全部先进先出
        timeout (float, 可选): generate() 默认的等待结果超时秒数
        logger (AgentLogger, 可选): 构造 QueueFullError 时使用的日志记录器

    示例:
    ```python
    >>> with RequestQueue(model, max_depth=10) as request_queue:
    ...     urgent = request_queue.submit(messages, priority="high")
    ...     answer = request_queue.generate(other_messages)
    ...     urgent.result()
    ```
    """

    def __init__(
        self,
        model: Model,
        max_depth: int | None = None,
        priority_enabled: bool = True,
        timeout: float | None = None,
        logger: AgentLogger | None = None,
    ):
        self.model = model
        self.max_depth = max_depth
        self.priority_enabled = priority_enabled
        self.timeout = timeout
        self.logger = logger or AgentLogger(level=LogLevel.ERROR)
        self._queue: queue.PriorityQueue = queue.PriorityQueue()
        self._sequence = itertools.count()
        self._submit_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._wait_times: deque[float] = deque(maxlen=WAIT_SAMPLES)
        self._total_processed = 0
        self._processing = False
        self._worker: threading.Thread | None = None
        self._dlq: deque[FailedRequest] | None = None
        self._dlq_lock = threading.Lock()

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_value, traceback):
        self.shutdown()

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def processing(self) -> bool:
        return self._processing

    def start(self) -> "RequestQueue":
        if not self.running:
            self._worker = threading.Thread(
                target=self._process_loop, name=f"RequestQueue-Worker-{id(self)}", daemon=True
            )
            self._worker.start()
            logger.debug("Request queue worker started for %s", self.model.model_id)
        return self

    def shutdown(self, timeout: float | None = 5.0):
        """
        发送关闭信号并等待工作线程退出

        已排队的请求会先被处理完；超时后仍未处理的请求被取消。
        """
        if self._worker is None:
            return
        self._queue.put((_SHUTDOWN_RANK, next(self._sequence), None))
        self._worker.join(timeout)
        if self._worker.is_alive():
            logger.warning("Request queue worker did not stop within %s seconds", timeout)
        self._worker = None
        self.clear()

    def submit(self, messages: list, priority: Literal["high", "normal"] = "normal", **kwargs) -> Future:
        """
        提交一个请求

        参数:
            messages (list): 传给 model.generate 的消息
            priority (str, 默认 "normal"): "high" 或 "normal"
            **kwargs: 传给 model.generate 的其他参数

        返回:
            Future: 完成时携带 ChatMessage，失败时携带模型抛出的异常

        异常:
            QueueFullError: 等待中的请求已达到 max_depth
        """
        if priority not in PRIORITY_RANKS:
            raise ValueError(f"Unknown priority '{priority}', should be one of: {', '.join(PRIORITY_RANKS)}")
        request = QueuedRequest(
            id=str(uuid.uuid4()),
            priority=priority,
            messages=list(messages),
            kwargs=dict(kwargs),
            future=Future(),
        )
        self._enqueue(request)
        return request.future

    def _enqueue(self, request: QueuedRequest):
        rank = PRIORITY_RANKS[request.priority] if self.priority_enabled else PRIORITY_RANKS["normal"]
        with self._submit_lock:
            if self.max_depth is not None and self.depth >= self.max_depth:
                raise QueueFullError(f"Queue full ({self.depth}/{self.max_depth})", self.logger)
            self.start()
            self._queue.put((rank, next(self._sequence), request))

    def generate(
        self, messages: list, priority: Literal["high", "normal"] = "normal", timeout: float | None = None, **kwargs
    ) -> ChatMessage:
        """Submits a request and blocks until the worker has processed it."""
        future = self.submit(messages, priority=priority, **kwargs)
        return future.result(timeout=timeout if timeout is not None else self.timeout)

    def _process_loop(self):
        while True:
            _, _, request = self._queue.get()
            try:
                if request is None:
                    break
                self._process_request(request)
            finally:
                self._queue.task_done()

    def _process_request(self, request: QueuedRequest):
        if not request.future.set_running_or_notify_cancel():
            return
        wait_time = request.wait_time
        with self._stats_lock:
            self._wait_times.append(wait_time)
            self._total_processed += 1
        self._processing = True
        self.emit(QueueRequestStarted(request_id=request.id, wait_time=wait_time))
        start_time = time.monotonic()
        try:
            result = self.model.generate(request.messages, **request.kwargs)
        except Exception as e:
            logger.info("Queued request %s failed: %s", request.id, e)
            self._add_to_dlq(request, e, attempts=request.attempts)
            request.future.set_exception(e)
        else:
            request.future.set_result(result)
        finally:
            self._processing = False
            self.emit(
                QueueRequestCompleted(
                    request_id=request.id, duration=time.monotonic() - start_time, queue_depth=self.depth
                )
            )

    def stats(self) -> QueueStats:
        with self._stats_lock:
            wait_times = list(self._wait_times)
            total_processed = self._total_processed
        return QueueStats(
            depth=self.depth,
            processing=self._processing,
            total_processed=total_processed,
            avg_wait_time=sum(wait_times) / len(wait_times) if wait_times else 0.0,
            max_wait_time=max(wait_times, default=0.0),
        )

    def clear(self) -> int:
        """Cancels every pending request and returns how many were dropped."""
        dropped = 0
        while True:
            try:
                _, _, request = self._queue.get_nowait()
            except queue.Empty:
                break
            self._queue.task_done()
            if request is not None and request.future.cancel():
                dropped += 1
        return dropped

    # 死信队列

    @property
    def dlq_enabled(self) -> bool:
        return self._dlq is not None

    def enable_dlq(self, max_size: int = 100) -> "RequestQueue":
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        with self._dlq_lock:
            existing = list(self._dlq) if self._dlq is not None else []
            self._dlq = deque(existing[-max_size:], maxlen=max_size)
        return self

    def disable_dlq(self) -> "RequestQueue":
        with self._dlq_lock:
            self._dlq = None
        return self

    def failed_requests(self) -> list[FailedRequest]:
        with self._dlq_lock:
            return list(self._dlq) if self._dlq is not None else []

    def clear_dlq(self) -> "RequestQueue":
        with self._dlq_lock:
            if self._dlq is not None:
                self._dlq.clear()
        return self

    def _add_to_dlq(self, request: QueuedRequest, error: Exception, attempts: int):
        with self._dlq_lock:
            if self._dlq is None:
                return
            failed = FailedRequest(request=request, error=type(error).__name__, error_message=str(error), attempts=attempts)
            # deque(maxlen) 会先淘汰最早的条目
            self._dlq.append(failed)
        self.emit(RequestFailed(request_id=request.id, error=f"{failed.error}: {failed.error_message}"))

    def retry_failed(self, count: int | None = None) -> list[Future]:
        """
        把死信队列中最早的 count 个请求重新放回队列（None 表示全部）

        重试同样由工作线程执行，保持模型的串行访问；再次失败的请求以 attempts + 1 回到死信队列。

        返回:
            list[Future]: 每个重新排队请求的 Future

        异常:
            QueueFullError: 队列已满，尚未重新排队的请求留在死信队列中
        """
        with self._dlq_lock:
            if self._dlq is None:
                return []
            count = len(self._dlq) if count is None else min(count, len(self._dlq))
            to_retry = [self._dlq.popleft() for _ in range(count)]

        futures: list[Future] = []
        for index, failed in enumerate(to_retry):
            previous = failed.request
            request = QueuedRequest(
                id=previous.id,
                priority=previous.priority,
                messages=previous.messages,
                kwargs=previous.kwargs,
                future=Future(),
                attempts=failed.attempts + 1,
            )
            try:
                self._enqueue(request)
            except QueueFullError:
                with self._dlq_lock:
                    if self._dlq is not None:
                        self._dlq.extendleft(reversed(to_retry[index:]))
                raise
            self.emit(RequestRetried(request_id=request.id, attempt=request.attempts))
            futures.append(request.future)
        return futures
