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

import unittest
from unittest.mock import MagicMock

import pytest

from smolagents import CodeAgent, RunResult, ToolCallingAgent
from smolagents.memory import ActionStep
from smolagents.models import (
    ChatMessage,
    ChatMessageToolCall,
    ChatMessageToolCallDefinition,
    Model,
)
from smolagents.monitoring import LogLevel, Monitor, Timing, TokenUsage


class FakeLLMModel(Model):
    def __init__(self, give_token_usage: bool = True):
        super().__init__(model_id="fake-llm")
        self.give_token_usage = give_token_usage

    def generate(self, prompt, tools_to_call_from=None, **kwargs):
        if tools_to_call_from is not None:
            return ChatMessage(
                role="assistant",
                content="",
                tool_calls=[
                    ChatMessageToolCall(
                        id="fake_id",
                        type="function",
                        function=ChatMessageToolCallDefinition(name="final_answer", arguments={"answer": "done"}),
                    )
                ],
                token_usage=TokenUsage(input_tokens=10, output_tokens=20) if self.give_token_usage else None,
            )
        else:
            return ChatMessage(
                role="assistant",
                content="""
Code:
```py
final_answer('This is the final answer.')
```""",
                token_usage=TokenUsage(input_tokens=10, output_tokens=20) if self.give_token_usage else None,
            )


class MonitoringTester(unittest.TestCase):
    def test_code_agent_metrics(self):
        agent = CodeAgent(
            tools=[],
            model=FakeLLMModel(),
            max_steps=1,
        )
        agent.run("Fake task")

        self.assertEqual(agent.monitor.total_input_token_count, 10)
        self.assertEqual(agent.monitor.total_output_token_count, 20)

    def test_toolcalling_agent_metrics(self):
        agent = ToolCallingAgent(
            tools=[],
            model=FakeLLMModel(),
            max_steps=1,
        )

        agent.run("Fake task")

        self.assertEqual(agent.monitor.total_input_token_count, 10)
        self.assertEqual(agent.monitor.total_output_token_count, 20)

    def test_code_agent_metrics_max_steps(self):
        class FakeLLMModelMalformedAnswer(Model):
            def generate(self, prompt, **kwargs):
                return ChatMessage(
                    role="assistant",
                    content="Malformed answer",
                    token_usage=TokenUsage(input_tokens=10, output_tokens=20),
                )

        agent = CodeAgent(
            tools=[],
            model=FakeLLMModelMalformedAnswer(),
            max_steps=1,
        )

        agent.run("Fake task")

        # The failed step and the closing summary both count
        self.assertEqual(agent.monitor.total_input_token_count, 20)
        self.assertEqual(agent.monitor.total_output_token_count, 40)
        self.assertEqual(agent.monitor.error_count, 2)

    def test_code_agent_metrics_generation_error(self):
        class FakeLLMModelGenerationException(Model):
            def generate(self, prompt, **kwargs):
                raise Exception("Cannot generate")

        agent = CodeAgent(
            tools=[],
            model=FakeLLMModelGenerationException(),
            max_steps=1,
        )
        with pytest.raises(Exception) as e:
            agent.run("Fake task")
        assert "Cannot generate" in str(e.value)

    def test_run_return_full_result(self):
        agent = CodeAgent(
            tools=[],
            model=FakeLLMModel(),
            max_steps=1,
            return_full_result=True,
        )

        result = agent.run("Fake task")

        self.assertIsInstance(result, RunResult)
        self.assertEqual(result.output, "This is the final answer.")
        self.assertEqual(result.state, "success")
        self.assertEqual(result.token_usage, TokenUsage(input_tokens=10, output_tokens=20))
        self.assertIsInstance(result.messages, list)
        self.assertGreaterEqual(result.timing.duration, 0)

    def test_run_return_full_result_without_token_usage(self):
        agent = ToolCallingAgent(
            tools=[],
            model=FakeLLMModel(give_token_usage=False),
            max_steps=1,
            return_full_result=True,
        )

        result = agent.run("Fake task")

        self.assertEqual(result.output, "done")
        self.assertIsNone(result.token_usage)


class TestTokenUsageAndTiming:
    def test_token_usage_total_and_addition(self):
        usage = TokenUsage(input_tokens=3, output_tokens=4) + TokenUsage(input_tokens=1, output_tokens=2)
        assert usage.total_tokens == 10
        assert usage.dict() == {"input_tokens": 4, "output_tokens": 6, "total_tokens": 10}

    def test_timing_duration(self):
        assert Timing(start_time=1.0).duration is None
        timing = Timing(start_time=1.0, end_time=3.5)
        assert timing.duration == 2.5
        assert timing.dict() == {"start_time": 1.0, "end_time": 3.5, "duration": 2.5}


class TestMonitor:
    def test_update_metrics_accumulates_tokens_and_errors(self):
        logger = MagicMock()
        monitor = Monitor(tracked_model=None, logger=logger)
        monitor.update_metrics(
            ActionStep(
                step_number=1,
                timing=Timing(start_time=0.0, end_time=1.0),
                token_usage=TokenUsage(input_tokens=5, output_tokens=3),
            )
        )
        monitor.update_metrics(
            ActionStep(step_number=2, timing=Timing(start_time=1.0, end_time=1.5), error=MagicMock())
        )
        assert monitor.step_durations == [1.0, 0.5]
        assert monitor.get_total_token_counts() == TokenUsage(input_tokens=5, output_tokens=3)
        assert monitor.error_count == 1
        assert logger.log.call_count == 2

        monitor.reset()
        assert monitor.step_durations == []
        assert monitor.get_total_token_counts().total_tokens == 0


class TestAgentLogger:
    def test_level_filtering(self, agent_logger):
        agent_logger.level = LogLevel.INFO
        agent_logger.log("visible message", level=LogLevel.INFO)
        agent_logger.log("hidden message", level=LogLevel.DEBUG)
        agent_logger.log("named level", level="error")
        output = agent_logger.console.export_text()
        assert "visible message" in output
        assert "hidden message" not in output
        assert "named level" in output

    def test_log_error_escapes_brackets(self, agent_logger):
        agent_logger.log_error("IndexError: list[0] out of range")
        assert "list[0]" in agent_logger.console.export_text()

    def test_visualize_agent_tree_shows_tools_and_reliability(self, agent_logger, weather_tool):
        agent = ToolCallingAgent(
            tools=[weather_tool],
            model=FakeLLMModel(),
            fallback_models=[FakeLLMModel()],
            logger=agent_logger,
        )
        agent.visualize()
        output = agent_logger.console.export_text()
        assert "ToolCallingAgent" in output
        assert "get_weather" in output
        assert "Reliability" in output
