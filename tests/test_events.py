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
import dataclasses
from unittest.mock import MagicMock

import pytest

from smolagents.events import (
    EVENT_NAMES,
    CircuitStateChanged,
    Event,
    EventEmitter,
    RetryRequested,
    StepCompleted,
    TaskCompleted,
    resolve_event_type,
)


class Publisher(EventEmitter):
    pass


class TestEvents:
    def test_events_are_immutable_and_identified(self):
        event = StepCompleted(step_number=1, outcome="success")
        other = StepCompleted(step_number=1, outcome="success")
        assert event.id != other.id
        assert event.created_at > 0
        with pytest.raises(dataclasses.FrozenInstanceError):
            event.step_number = 2

    def test_dict_includes_event_name(self):
        event = TaskCompleted(outcome="success", output=42, steps_taken=3)
        as_dict = event.dict()
        assert as_dict["event"] == "TaskCompleted"
        assert as_dict["output"] == 42
        assert as_dict["steps_taken"] == 3
        assert "id" in as_dict and "created_at" in as_dict

    def test_resolve_event_type(self):
        assert resolve_event_type("retry") is RetryRequested
        assert resolve_event_type(CircuitStateChanged) is CircuitStateChanged
        assert resolve_event_type("any") is Event
        assert all(issubclass(event_type, Event) for event_type in EVENT_NAMES.values())
        with pytest.raises(ValueError, match="Unknown event name"):
            resolve_event_type("not_an_event")
        with pytest.raises(TypeError):
            resolve_event_type(dict)


class TestEventEmitter:
    def test_handlers_receive_matching_events_in_order(self):
        publisher = Publisher()
        received = []
        publisher.on("step_complete", lambda event: received.append(("first", event.step_number)))
        publisher.on(StepCompleted, lambda event: received.append(("second", event.step_number)))
        publisher.on("task_complete", lambda event: received.append(("task", event.outcome)))

        publisher.emit(StepCompleted(step_number=4, outcome="error"))

        assert received == [("first", 4), ("second", 4)]

    def test_subscribing_to_base_event_receives_everything(self):
        publisher = Publisher()
        handler = MagicMock()
        publisher.on(Event, handler)
        publisher.emit(StepCompleted(step_number=1, outcome="success"))
        publisher.emit(TaskCompleted(outcome="max_steps", output=None, steps_taken=1))
        assert handler.call_count == 2

    def test_on_is_chainable_and_off_removes_handlers(self):
        publisher = Publisher()
        handler = MagicMock()
        other_handler = MagicMock()
        assert publisher.on("retry", handler).on("retry", other_handler) is publisher
        assert publisher.has_handlers("retry")

        publisher.off("retry", handler)
        publisher.emit(RetryRequested(model_id="m", attempt=1, max_attempts=3, delay=0.5, error="boom"))
        handler.assert_not_called()
        other_handler.assert_called_once()

        publisher.off("retry")
        assert not publisher.has_handlers("retry")

    def test_failing_handler_does_not_stop_others(self, caplog):
        publisher = Publisher()
        handler = MagicMock()

        def failing_handler(event):
            raise RuntimeError("observer crashed")

        publisher.on("step_complete", failing_handler)
        publisher.on("step_complete", handler)

        event = publisher.emit(StepCompleted(step_number=1, outcome="success"))

        handler.assert_called_once_with(event)
        assert "Event handler" in caplog.text

    def test_clear_handlers(self):
        publisher = Publisher()
        publisher.on("any", MagicMock())
        publisher.clear_handlers()
        assert not publisher.has_handlers("step_complete")
