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
智能代理模块 - smolagents 的核心代理实现

本模块包含基于 ReAct 框架的多步骤智能代理实现，支持工具调用和代码执行两种模式。
每一步都经历 生成 -> 解析 -> 执行 -> 观察，模型调用可以经过可靠性层
（重试、熔断、限流、回退链），运行过程通过事件通知外部观察者。

主要类：
- MultiStepAgent: 多步骤代理的抽象基类
- ToolCallingAgent: 基于工具调用的代理，同一步内的工具调用并发执行
- CodeAgent: 基于代码执行的代理
- RunResult: 一次运行的完整结果

作者: HuggingFace 团队
版本: 1.0
"""

import importlib.resources
import inspect
import json
import textwrap
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Generator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING, Any, Literal, TypedDict

import yaml
from jinja2 import StrictUndefined, Template
from rich.console import Group
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text


if TYPE_CHECKING:
    import PIL.Image

from .default_tools import TOOL_MAPPING, FinalAnswerTool
from .evaluation import (
    EVALUATION_MAX_TOKENS,
    build_evaluation_messages,
    check_repetition,
    parse_evaluation,
    step_observation,
)
from .events import (
    EvaluationCompleted,
    Event,
    EventEmitter,
    RepetitionDetected,
    StepCompleted,
    TaskCompleted,
    ToolCallCompleted,
    ToolCallRequested,
)
from .local_python_executor import LocalPythonExecutor, fix_final_answer_code
from .memory import (
    ActionStep,
    AgentMemory,
    FinalAnswerStep,
    MemoryStep,
    Message,
    PlanningStep,
    SystemPromptStep,
    TaskStep,
    ToolCall,
)
from .models import ChatMessage, MessageRole, Model, parse_json_if_needed
from .monitoring import YELLOW_HEX, AgentLogger, LogLevel, Monitor, Timing, TokenUsage
from .reliability import RateLimiter, ResilientModel, RetryPolicy
from .tools import Tool
from .utils import (
    BASE_BUILTIN_MODULES,
    AgentError,
    AgentExecutionError,
    AgentGenerationError,
    AgentMaxStepsError,
    AgentParsingError,
    AgentToolCallError,
    AgentToolExecutionError,
    is_valid_name,
    parse_code_blobs,
    truncate_content,
)


__all__ = ["MultiStepAgent", "ToolCallingAgent", "CodeAgent", "RunResult", "PromptTemplates"]

logger = getLogger(__name__)


def populate_template(template: str, variables: dict[str, Any]) -> str:
    """
    使用提供的变量填充 Jinja2 模板

    参数:
        template (str): Jinja2 模板字符串
        variables (dict[str, Any]): 用于填充模板的变量字典

    返回:
        str: 填充后的字符串

    异常:
        Exception: 模板渲染失败（例如引用了未提供的变量）时抛出
    """
    compiled_template = Template(template, undefined=StrictUndefined)
    try:
        return compiled_template.render(**variables)
    except Exception as e:
        raise Exception(f"Error during jinja template rendering: {type(e).__name__}: {e}")


@dataclass
class FinalOutput:
    """
    单个步骤的输出

    属性:
        output (Any | None): 最终答案；步骤没有给出最终答案时为 None
    """

    output: Any | None


class PlanningPromptTemplate(TypedDict):
    """
    Prompt templates for the planning step.

    Args:
        initial_plan (`str`): Initial plan prompt.
        update_plan_pre_messages (`str`): Update plan pre-messages prompt.
        update_plan_post_messages (`str`): Update plan post-messages prompt.
    """

    initial_plan: str
    update_plan_pre_messages: str
    update_plan_post_messages: str


class FinalAnswerPromptTemplate(TypedDict):
    """
    Prompt templates for the final answer.

    Args:
        pre_messages (`str`): Pre-messages prompt.
        post_messages (`str`): Post-messages prompt.
    """

    pre_messages: str
    post_messages: str


class PromptTemplates(TypedDict):
    """
    Prompt templates for the agent.

    Args:
        system_prompt (`str`): System prompt.
        planning ([`~agents.PlanningPromptTemplate`]): Planning prompt templates.
        final_answer ([`~agents.FinalAnswerPromptTemplate`]): Final answer prompt templates.
    """

    system_prompt: str
    planning: PlanningPromptTemplate
    final_answer: FinalAnswerPromptTemplate


EMPTY_PROMPT_TEMPLATES = PromptTemplates(
    system_prompt="",
    planning=PlanningPromptTemplate(
        initial_plan="",
        update_plan_pre_messages="",
        update_plan_post_messages="",
    ),
    final_answer=FinalAnswerPromptTemplate(pre_messages="", post_messages=""),
)


def load_prompt_templates(filename: str) -> PromptTemplates:
    return yaml.safe_load(importlib.resources.files("smolagents.prompts").joinpath(filename).read_text())


RunState = Literal["success", "max_steps_error", "budget_exceeded", "interrupted", "error"]

# TaskCompleted 的 outcome 到 RunResult.state 的映射
RUN_STATES: dict[str, RunState] = {
    "success": "success",
    "max_steps": "max_steps_error",
    "budget_exceeded": "budget_exceeded",
    "interrupted": "interrupted",
    "error": "error",
}


@dataclass
class RunResult:
    """Holds extended information about an agent run.

    Attributes:
        output (Any | None): The final output of the agent run, if available.
        state (`str`): The final state of the agent after the run, one of "success", "max_steps_error",
            "budget_exceeded", "interrupted" or "error".
        messages (list[dict]): The agent's memory, as a list of serialized steps.
        token_usage (TokenUsage | None): Count of tokens used during the run, None if a step did not report usage.
        timing (Timing): Timing details of the agent run: start time, end time, duration.
        steps (list[MemoryStep]): The memory steps recorded by the agent.
        error (AgentError | None): The unrecoverable error that stopped the run, if any.
    """

    output: Any | None
    state: RunState
    messages: list[dict]
    token_usage: TokenUsage | None
    timing: Timing
    steps: list[MemoryStep] = field(default_factory=list)
    error: AgentError | None = None

    def dict(self) -> dict[str, Any]:
        return {
            "output": self.output,
            "state": self.state,
            "messages": self.messages,
            "token_usage": self.token_usage.dict() if self.token_usage else None,
            "timing": self.timing.dict(),
            "error": self.error.dict() if self.error else None,
        }


class MultiStepAgent(ABC, EventEmitter):
    """
    多步骤智能代理抽象基类 - 基于 ReAct 框架的任务解决器

    在目标未达成时，代理循环执行由模型生成的行动并记录从环境获得的观察，
    直到给出最终答案、用完步数或预算、被中断，或遇到不可恢复的错误。

    参数:
        tools (`list[Tool]`): 代理可以使用的工具列表
        model (`Model`): 生成代理行动的模型
        prompt_templates ([`~agents.PromptTemplates`], *可选*): 提示模板集合
        max_steps (`int`, 默认 `20`): 代理解决任务的最大步数
        add_base_tools (`bool`, 默认 `False`): 是否添加基础工具到代理的工具集
        verbosity_level (`LogLevel`, 默认 `LogLevel.INFO`): 代理日志的详细程度
        step_callbacks (`list[Callable]`, *可选*): 每步结束时调用的回调函数列表
        planning_interval (`int`, *可选*): 执行规划步骤的间隔
        name (`str`, *可选*): 代理名称
        description (`str`, *可选*): 代理描述
        final_answer_checks (`list[Callable]`, *可选*): 接受最终答案前运行的验证函数列表，
            每个函数接受最终答案和代理的记忆，返回布尔值
        return_full_result (`bool`, 默认 `False`): run() 是否返回 RunResult
        logger (`AgentLogger`, *可选*): 自定义日志记录器
        token_budget (`int`, *可选*): 整次运行允许消耗的令牌总数
        time_budget (`float`, *可选*): 整次运行允许的秒数
        fallback_models (`list[Model]`, *可选*): 主模型失败后依次尝试的模型
        retry_policy ([`~reliability.RetryPolicy`], *可选*): 每个模型的重试策略
        circuit_threshold (`int`, *可选*): 熔断器的连续失败阈值
        circuit_cool_off (`float`, *可选*): 熔断冷却秒数
        rate_limiter ([`~reliability.RateLimiter`], *可选*): 模型调用共享的令牌桶
        evaluation_enabled (`bool`, 默认 `False`): 没有给出最终答案的步骤之后，是否用一次简短的模型调用
            评估任务是否已经完成（DONE / CONTINUE / STUCK）
        repetition_detection (`bool`, 默认 `False`): 是否检测重复的工具调用、代码或观察，
            发现循环时在下一步的输入中注入提示
        repetition_window (`int`, 默认 `3`): 重复检测查看的最近步数

    只要给出任一可靠性参数，模型就会被包装为 ResilientModel，
    其事件（重试、故障转移、熔断等）会转发到代理自身。
    """

    def __init__(
        self,
        tools: list[Tool],
        model: Model,
        prompt_templates: PromptTemplates | None = None,
        max_steps: int = 20,
        add_base_tools: bool = False,
        verbosity_level: LogLevel = LogLevel.INFO,
        step_callbacks: list[Callable] | None = None,
        planning_interval: int | None = None,
        name: str | None = None,
        description: str | None = None,
        final_answer_checks: list[Callable] | None = None,
        return_full_result: bool = False,
        logger: AgentLogger | None = None,
        token_budget: int | None = None,
        time_budget: float | None = None,
        fallback_models: list[Model] | None = None,
        retry_policy: RetryPolicy | None = None,
        circuit_threshold: int | None = None,
        circuit_cool_off: float | None = None,
        rate_limiter: RateLimiter | None = None,
        evaluation_enabled: bool = False,
        repetition_detection: bool = False,
        repetition_window: int = 3,
    ):
        self.agent_name = self.__class__.__name__  # 代理类名称

        # 配置提示模板，使用默认模板或用户提供的模板
        self.prompt_templates = prompt_templates or EMPTY_PROMPT_TEMPLATES
        if prompt_templates is not None:
            missing_keys = set(EMPTY_PROMPT_TEMPLATES.keys()) - set(prompt_templates.keys())
            assert not missing_keys, (
                f"Some prompt templates are missing from your custom `prompt_templates`: {missing_keys}"
            )
            for key, value in EMPTY_PROMPT_TEMPLATES.items():
                if isinstance(value, dict):
                    for subkey in value.keys():
                        assert key in prompt_templates.keys() and (subkey in prompt_templates[key].keys()), (
                            f"Some prompt templates are missing from your custom `prompt_templates`: {subkey} under {key}"
                        )

        if token_budget is not None and token_budget <= 0:
            raise ValueError(f"token_budget must be positive, got {token_budget}")
        if time_budget is not None and time_budget <= 0:
            raise ValueError(f"time_budget must be positive, got {time_budget}")
        if repetition_window < 2:
            raise ValueError(f"repetition_window must be at least 2, got {repetition_window}")

        # 执行控制参数
        self.max_steps = max_steps
        self.step_number = 0
        self.planning_interval = planning_interval
        self.token_budget = token_budget
        self.time_budget = time_budget
        self.evaluation_enabled = evaluation_enabled
        self.repetition_detection = repetition_detection
        self.repetition_window = repetition_window
        self.state: dict[str, Any] = {}  # 执行过程中的变量

        # 代理身份
        self.name = self._validate_name(name)
        self.description = description
        self.final_answer_checks = final_answer_checks
        self.return_full_result = return_full_result

        # 日志记录器需要先于模型包装创建，可靠性错误会通过它输出
        self.logger = logger if logger is not None else AgentLogger(level=verbosity_level)
        self.model = self._setup_model(
            model,
            fallback_models=fallback_models,
            retry_policy=retry_policy,
            circuit_threshold=circuit_threshold,
            circuit_cool_off=circuit_cool_off,
            rate_limiter=rate_limiter,
        )

        self._setup_tools(tools, add_base_tools)
        self._validate_tools(tools)

        self.task: str | None = None
        self.interrupt_switch = False
        self.run_start_time: float | None = None
        self.run_outcome: str | None = None
        self._first_step_number = 1
        self.memory = AgentMemory(self.system_prompt, token_budget=token_budget)

        # 监控器作为最后一个步骤回调，统计耗时与令牌
        self.monitor = Monitor(self.model, self.logger)
        self.step_callbacks = step_callbacks if step_callbacks is not None else []
        self.step_callbacks.append(self.monitor.update_metrics)

    def _setup_model(
        self,
        model: Model,
        fallback_models: list[Model] | None = None,
        retry_policy: RetryPolicy | None = None,
        circuit_threshold: int | None = None,
        circuit_cool_off: float | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> Model:
        """
        按需把模型包装为 ResilientModel，并把可靠性事件转发到代理
        """
        reliability_options = (fallback_models, retry_policy, circuit_threshold, circuit_cool_off, rate_limiter)
        if any(option is not None for option in reliability_options):
            model = ResilientModel(
                [model, *(fallback_models or [])],
                retry_policy=retry_policy,
                circuit_threshold=circuit_threshold if circuit_threshold is not None else 3,
                circuit_cool_off=circuit_cool_off if circuit_cool_off is not None else 30.0,
                rate_limiter=rate_limiter,
                logger=self.logger,
            )
        if isinstance(model, EventEmitter):
            model.on(Event, self.emit)
        return model

    @property
    def system_prompt(self) -> str:
        return self.initialize_system_prompt()

    @system_prompt.setter
    def system_prompt(self, value: str):
        raise AttributeError(
            """The 'system_prompt' property is read-only. Use 'self.prompt_templates["system_prompt"]' instead."""
        )

    def _validate_name(self, name: str | None) -> str | None:
        if name is not None and not is_valid_name(name):
            raise ValueError(f"Agent name '{name}' must be a valid Python identifier and not a reserved keyword.")
        return name

    def _setup_tools(self, tools: list[Tool], add_base_tools: bool):
        assert all(isinstance(tool, Tool) for tool in tools), "All elements must be instance of Tool (or a subclass)"
        self.tools = {tool.name: tool for tool in tools}
        if add_base_tools:
            self.tools.update(
                {
                    name: cls()
                    for name, cls in TOOL_MAPPING.items()
                    # CodeAgent 自己就能执行代码，不需要 python_interpreter
                    if name != "python_interpreter" or self.__class__.__name__ == "ToolCallingAgent"
                }
            )
        # 确保始终包含最终答案工具
        self.tools.setdefault("final_answer", FinalAnswerTool())

    def _validate_tools(self, tools: list[Tool]):
        names = [tool.name for tool in tools]
        if self.name:
            names.append(self.name)
        if len(names) != len(set(names)):
            raise ValueError(
                "Each tool should have a unique name! You passed these duplicate names: "
                f"{[name for name in names if names.count(name) > 1]}"
            )

    def run(
        self,
        task: str,
        stream: bool = False,
        reset: bool = True,
        images: list["PIL.Image.Image"] | None = None,
        additional_args: dict | None = None,
        max_steps: int | None = None,
    ):
        """
        为给定任务运行代理

        参数:
            task (`str`): 要执行的任务描述
            stream (`bool`): 是否以流式模式运行
                如果为 `True`，返回一个生成器，依次产出 PlanningStep、ActionStep，最后产出 FinalAnswerStep。
                如果为 `False`，内部执行所有步骤，完成后仅返回最终答案。
            reset (`bool`): 是否重置记忆，为 False 时从上次运行继续
            images (`list[PIL.Image.Image]`, *可选*): 图像对象列表
            additional_args (`dict`, *可选*): 传递给代理的其他变量，代码中可直接按键名使用
            max_steps (`int`, *可选*): 本次运行的最大步数，默认使用代理的设置

        返回:
            stream=False 时返回最终答案；return_full_result=True 时返回 RunResult；
            stream=True 时返回步骤生成器

        示例:
        ```python
        from smolagents import CodeAgent
        agent = CodeAgent(tools=[], model=model)
        result = agent.run("2 的 3.7384 次方是多少？")
        ```
        """
        max_steps = max_steps or self.max_steps
        self.task = task
        self.interrupt_switch = False
        if additional_args is not None:
            self.state.update(additional_args)
            self.task += f"""
You have been provided with these additional arguments, that you can access using the keys as variables in your python code:
{str(additional_args)}."""

        self.memory.system_prompt = SystemPromptStep(system_prompt=self.system_prompt)
        if reset:
            self.memory.reset()
            self.monitor.reset()

        self.logger.log_task(
            content=self.task.strip(),
            subtitle=f"{type(self.model).__name__} - {getattr(self.model, 'model_id', None) or ''}",
            level=LogLevel.INFO,
            title=self.name,
        )
        self.memory.append(TaskStep(task=self.task, task_images=images))

        if getattr(self, "python_executor", None):
            self.python_executor.send_variables(variables=self.state)
            self.python_executor.send_tools(self.tools)

        if stream:
            # 步骤在执行时通过生成器逐个返回
            return self._run_stream(task=self.task, max_steps=max_steps, images=images)

        run_start_time = time.time()
        error = None
        output = None
        try:
            steps = list(self._run_stream(task=self.task, max_steps=max_steps, images=images))
        except AgentError as e:
            # 中断与生成错误：只有需要完整结果时才转为 RunResult
            if not self.return_full_result:
                raise
            error = e
        else:
            assert isinstance(steps[-1], FinalAnswerStep)
            output = steps[-1].output

        if self.return_full_result:
            return RunResult(
                output=output,
                state=RUN_STATES.get(self.run_outcome, "error"),
                messages=self.memory.get_full_steps(),
                token_usage=self._sum_token_usage(),
                timing=Timing(start_time=run_start_time, end_time=time.time()),
                steps=list(self.memory.steps),
                error=error,
            )
        return output

    def _sum_token_usage(self) -> TokenUsage | None:
        total_input_tokens = 0
        total_output_tokens = 0
        for step in self.memory.steps:
            if isinstance(step, (ActionStep, PlanningStep)):
                # 任一步骤缺少统计时，总数没有意义
                if step.token_usage is None:
                    return None
                total_input_tokens += step.token_usage.input_tokens
                total_output_tokens += step.token_usage.output_tokens
        return TokenUsage(input_tokens=total_input_tokens, output_tokens=total_output_tokens)

    def _run_stream(
        self, task: str, max_steps: int, images: list["PIL.Image.Image"] | None = None
    ) -> Generator[ActionStep | PlanningStep | FinalAnswerStep]:
        """
        代理的核心执行循环，逐步产出每个执行步骤

        产出:
            PlanningStep、ActionStep，最后是 FinalAnswerStep

        异常:
            AgentGenerationError: 模型生成失败（包括可靠性层的聚合失败），不可恢复
            AgentError: 运行被 interrupt() 中断
        """
        final_output = None
        final_answer = None
        outcome = None
        task_completed = False
        self.run_start_time = time.time()
        self.run_outcome = None
        # reset=False 时步骤序号接着上一次运行继续
        previous_steps = self.memory.action_steps
        first_step = previous_steps[-1].step_number + 1 if previous_steps else 1
        self.step_number = first_step
        self._first_step_number = first_step

        try:
            while final_output is None and self.step_number < first_step + max_steps:
                # 中断只在步骤之间检查，正在进行的模型或工具调用不会被打断
                if self.interrupt_switch:
                    outcome = "interrupted"
                    raise AgentError("Agent interrupted.", self.logger)

                relative_step = self.step_number - first_step + 1
                if self.planning_interval is not None and (
                    relative_step == 1 or (relative_step - 1) % self.planning_interval == 0
                ):
                    planning_step = self._generate_planning_step(
                        task,
                        is_first_step=(self.step_number == 1),
                        remaining_steps=max_steps - relative_step,
                    )
                    self._finalize_step(planning_step)
                    self.memory.append(planning_step)
                    yield planning_step

                action_step = ActionStep(
                    step_number=self.step_number,
                    timing=Timing(start_time=time.time()),
                    observations_images=images,
                )
                try:
                    final_output = self._execute_step(action_step)
                    if final_output is None and self.evaluation_enabled:
                        final_output = self._evaluate_step(task, action_step)
                except AgentGenerationError as e:
                    # 模型或可靠性层失败，记录后终止运行
                    logger.warning("Stopping run at step %d: %s", self.step_number, e)
                    action_step.error = e
                    self._finalize_step(action_step)
                    self.memory.append(action_step)
                    raise
                except AgentError as e:
                    # 解析、执行等错误由模型引起，记录到步骤中，下一步模型会看到它
                    action_step.error = e
                if final_output is None and self.repetition_detection:
                    self._detect_repetition(action_step)
                self._finalize_step(action_step)
                self.memory.append(action_step)
                yield action_step
                self.step_number += 1

                if final_output is None:
                    budget_message = self._check_budgets()
                    if budget_message is not None:
                        self.logger.log(Text(budget_message, style="bold red"), level=LogLevel.INFO)
                        outcome = "budget_exceeded"
                        break

            if final_output is not None:
                final_answer = final_output.output
                outcome = "success"
            elif outcome is None:
                # 步数用完仍没有答案：再调用一次模型，根据记忆给出答案
                final_answer = self._handle_max_steps_reached(task, images)
                outcome = "max_steps"
                yield self.memory.steps[-1]
            self._complete_task(outcome, final_answer)
            task_completed = True
        except GeneratorExit:
            # 流式调用方提前关闭了生成器
            outcome = outcome or "interrupted"
            raise
        finally:
            if not task_completed:
                self._complete_task(outcome or "error", None)

        yield FinalAnswerStep(output=final_answer)

    def _complete_task(self, outcome: str, output: Any):
        self.run_outcome = outcome
        # 不计入达到最大步数后补充的总结步骤
        steps_taken = sum(
            1
            for step in self.memory.action_steps
            if step.step_number >= self._first_step_number and not isinstance(step.error, AgentMaxStepsError)
        )
        self.emit(TaskCompleted(outcome=outcome, output=output, steps_taken=steps_taken))

    def _check_budgets(self) -> str | None:
        """
        检查令牌与时间预算

        返回:
            str | None: 预算耗尽时的说明，否则为 None
        """
        if self.token_budget is not None:
            used_tokens = self.monitor.get_total_token_counts().total_tokens
            if used_tokens >= self.token_budget:
                return f"Token budget exhausted: {used_tokens:,} tokens used out of {self.token_budget:,}."
        if self.time_budget is not None and self.run_start_time is not None:
            elapsed = time.time() - self.run_start_time
            if elapsed >= self.time_budget:
                return f"Time budget exhausted: {elapsed:.2f} seconds elapsed out of {self.time_budget:.2f}."
        return None

    def _execute_step(self, memory_step: ActionStep) -> FinalOutput | None:
        """
        执行一个行动步骤

        返回:
            FinalOutput | None: 步骤给出最终答案时返回 FinalOutput（答案本身可以是 None），否则返回 None
        """
        self.logger.log_rule(f"Step {self.step_number}", level=LogLevel.INFO)
        final_output = None
        for output in self._step_stream(memory_step):
            if memory_step.is_final_answer:
                if self.final_answer_checks:
                    try:
                        self._validate_final_answer(output.output)
                    except AgentError:
                        memory_step.is_final_answer = False
                        raise
                final_output = output
        return final_output

    def _validate_final_answer(self, final_answer: Any):
        for check_function in self.final_answer_checks:
            try:
                assert check_function(final_answer, self.memory)
            except Exception as e:
                raise AgentError(f"Check {check_function.__name__} failed with error: {e}", self.logger)

    def _evaluate_step(self, task: str, memory_step: ActionStep) -> FinalOutput | None:
        """
        评估阶段：只用任务和最后一次观察，询问模型任务是否已经完成

        评估调用的令牌计入当前步骤。STUCK 的理由作为提示注入下一步。

        返回:
            FinalOutput | None: 模型回答 DONE 且答案通过 final_answer_checks 时返回 FinalOutput，否则返回 None

        异常:
            AgentGenerationError: 评估调用失败
        """
        step_count = memory_step.step_number - self._first_step_number + 1
        messages = build_evaluation_messages(task, step_count, step_observation(memory_step))
        try:
            chat_message = self.model.generate(messages, max_tokens=EVALUATION_MAX_TOKENS)
        except AgentGenerationError:
            raise
        except Exception as e:
            raise AgentGenerationError(f"Error while evaluating progress:\n{e}", self.logger) from e

        result = parse_evaluation(chat_message.content, chat_message.token_usage)
        if result.token_usage is not None:
            memory_step.token_usage = (
                result.token_usage if memory_step.token_usage is None else memory_step.token_usage + result.token_usage
            )
        self.emit(
            EvaluationCompleted(
                step_number=memory_step.step_number,
                status=result.status,
                answer=result.answer,
                reasoning=result.reasoning,
            )
        )

        if result.status == "done":
            if self.final_answer_checks:
                try:
                    self._validate_final_answer(result.answer)
                except AgentError as e:
                    self._add_guidance(
                        memory_step, f"[Evaluation] The task looked complete but the answer was rejected: {e}"
                    )
                    return None
            self.logger.log(
                Text(f"Evaluation: task complete at step {memory_step.step_number}", style=f"bold {YELLOW_HEX}"),
                level=LogLevel.INFO,
            )
            memory_step.action_output = result.answer
            memory_step.is_final_answer = True
            return FinalOutput(output=result.answer)

        if result.status == "stuck":
            logger.warning("Evaluation at step %d: stuck: %s", memory_step.step_number, result.reasoning)
            self._add_guidance(memory_step, result.guidance)
        else:
            logger.debug("Evaluation at step %d: continue: %s", memory_step.step_number, result.reasoning)
        return None

    def _detect_repetition(self, memory_step: ActionStep):
        """检查本次运行最近的步骤是否在重复，发现循环时发布 RepetitionDetected 并注入提示"""
        steps = [step for step in self.memory.action_steps if step.step_number >= self._first_step_number]
        result = check_repetition([*steps, memory_step], window_size=self.repetition_window)
        if result is None:
            return
        self.logger.log(
            Text(f"Repetition detected: {result.pattern} repeated {result.count} times", style="bold red"),
            level=LogLevel.INFO,
        )
        self.emit(
            RepetitionDetected(
                step_number=memory_step.step_number,
                pattern=result.pattern,
                count=result.count,
                guidance=result.guidance,
            )
        )
        self._add_guidance(memory_step, f"[Loop Detection] {result.guidance}")

    @staticmethod
    def _add_guidance(memory_step: ActionStep, guidance: str | None):
        if not guidance:
            return
        memory_step.guidance = guidance if memory_step.guidance is None else f"{memory_step.guidance}\n\n{guidance}"

    def _finalize_step(self, memory_step: ActionStep | PlanningStep):
        """
        完成步骤的收尾工作：记录结束时间、执行步骤回调、发布 StepCompleted

        回调可以只接受步骤，也可以额外接受关键字参数 agent。
        """
        memory_step.timing.end_time = time.time()
        for callback in self.step_callbacks:
            callback(memory_step) if len(inspect.signature(callback).parameters) == 1 else callback(
                memory_step, agent=self
            )
        if isinstance(memory_step, ActionStep):
            if memory_step.error is not None:
                outcome = "error"
            elif memory_step.is_final_answer:
                outcome = "final_answer"
            else:
                outcome = "success"
            self.emit(
                StepCompleted(
                    step_number=memory_step.step_number,
                    outcome=outcome,
                    observations=memory_step.observations,
                )
            )

    def _handle_max_steps_reached(self, task: str, images: list["PIL.Image.Image"] | None) -> Any:
        action_step_start_time = time.time()
        final_answer = self.provide_final_answer(task, images)
        final_memory_step = ActionStep(
            step_number=self.step_number,
            error=AgentMaxStepsError("Reached max steps.", self.logger),
            timing=Timing(start_time=action_step_start_time, end_time=time.time()),
            token_usage=final_answer.token_usage,
        )
        final_memory_step.action_output = final_answer.content
        self._finalize_step(final_memory_step)
        self.memory.append(final_memory_step)
        return final_answer.content

    def _generate_planning_step(self, task: str, is_first_step: bool, remaining_steps: int) -> PlanningStep:
        """
        生成初始计划或更新计划

        参数:
            task (str): 任务描述
            is_first_step (bool): 为 True 时生成初始计划，否则基于已有记忆更新计划
            remaining_steps (int): 剩余步数，写入更新计划的提示中
        """
        start_time = time.time()
        if is_first_step:
            input_messages = [
                {
                    "role": MessageRole.USER,
                    "content": [
                        {
                            "type": "text",
                            "text": populate_template(
                                self.prompt_templates["planning"]["initial_plan"],
                                variables={"task": task, "tools": self.tools},
                            ),
                        }
                    ],
                }
            ]
        else:
            # 摘要模式去掉系统提示与旧计划，避免旧计划过度影响新计划
            memory_messages = self.write_memory_to_messages(summary_mode=True)
            plan_update_pre = {
                "role": MessageRole.SYSTEM,
                "content": [
                    {
                        "type": "text",
                        "text": populate_template(
                            self.prompt_templates["planning"]["update_plan_pre_messages"], variables={"task": task}
                        ),
                    }
                ],
            }
            plan_update_post = {
                "role": MessageRole.USER,
                "content": [
                    {
                        "type": "text",
                        "text": populate_template(
                            self.prompt_templates["planning"]["update_plan_post_messages"],
                            variables={"task": task, "tools": self.tools, "remaining_steps": remaining_steps},
                        ),
                    }
                ],
            }
            input_messages = [plan_update_pre] + memory_messages + [plan_update_post]

        try:
            plan_message = self.model.generate(input_messages, stop_sequences=["<end_plan>"])
        except AgentGenerationError:
            raise
        except Exception as e:
            raise AgentGenerationError(f"Error while generating plan:\n{e}", self.logger) from e
        plan_message_content = plan_message.content or ""

        if is_first_step:
            plan = textwrap.dedent(
                f"""Here are the facts I know and the plan of action that I will follow to solve the task:\n```\n{plan_message_content}\n```"""
            )
        else:
            plan = textwrap.dedent(
                f"""I still need to solve the task I was given:\n```\n{self.task}\n```\n\nHere are the facts I know and my new/updated plan of action to solve the task:\n```\n{plan_message_content}\n```"""
            )
        log_headline = "Initial plan" if is_first_step else "Updated plan"
        self.logger.log(Rule(f"[bold]{log_headline}", style="orange"), Text(plan), level=LogLevel.INFO)
        return PlanningStep(
            model_input_messages=input_messages,
            plan=plan,
            model_output_message=ChatMessage(role=MessageRole.ASSISTANT, content=plan_message_content),
            token_usage=plan_message.token_usage,
            timing=Timing(start_time=start_time),
        )

    @abstractmethod
    def initialize_system_prompt(self) -> str:
        """生成代理的系统提示词，由子类实现"""
        ...

    def interrupt(self):
        """
        中断代理执行

        当前步骤会正常完成，循环在下一步开始前停止。
        """
        self.interrupt_switch = True

    def write_memory_to_messages(self, summary_mode: bool | None = False) -> list[Message]:
        """
        将记忆转换为可直接发送给模型的消息列表

        参数:
            summary_mode (bool | None): 为 True 时去掉系统提示与模型的原始输出
        """
        messages = self.memory.system_prompt.to_messages(summary_mode=summary_mode)
        for memory_step in self.memory.steps:
            messages.extend(memory_step.to_messages(summary_mode=summary_mode))
        return messages

    def _step_stream(self, memory_step: ActionStep) -> Generator[FinalOutput]:
        """
        执行一步 ReAct：思考、行动并观察结果，最后产出 FinalOutput
        """
        raise NotImplementedError("This method should be implemented in child classes")

    def step(self, memory_step: ActionStep) -> Any:
        """
        执行一步并返回最终答案，步骤不是最后一步时返回 None
        """
        return list(self._step_stream(memory_step))[-1].output

    def provide_final_answer(self, task: str, images: list["PIL.Image.Image"] | None = None) -> ChatMessage:
        """
        根据代理的交互记录给出任务的最终答案

        参数:
            task (`str`): 要执行的任务描述
            images (`list[PIL.Image.Image]`, *可选*): 图像对象列表

        返回:
            `ChatMessage`: 包含最终答案的消息

        异常:
            AgentGenerationError: 模型生成失败
        """
        messages = [
            {
                "role": MessageRole.SYSTEM,
                "content": [
                    {
                        "type": "text",
                        "text": self.prompt_templates["final_answer"]["pre_messages"],
                    }
                ],
            }
        ]
        if images:
            messages[0]["content"].append({"type": "image"})
        messages += self.write_memory_to_messages()[1:]
        messages += [
            {
                "role": MessageRole.USER,
                "content": [
                    {
                        "type": "text",
                        "text": populate_template(
                            self.prompt_templates["final_answer"]["post_messages"], variables={"task": task}
                        ),
                    }
                ],
            }
        ]
        try:
            return self.model.generate(messages)
        except AgentGenerationError:
            raise
        except Exception as e:
            raise AgentGenerationError(f"Error in generating final LLM output:\n{e}", self.logger) from e

    def visualize(self):
        """Creates a rich tree visualization of the agent's structure."""
        self.logger.visualize_agent_tree(self)

    def replay(self, detailed: bool = False):
        """
        在控制台中回放代理的步骤

        参数:
            detailed (bool, 默认 False): 是否打印每一步的模型输入，输出会很长，仅在调试时使用
        """
        self.memory.replay(self.logger, detailed=detailed)


class ToolCallingAgent(MultiStepAgent):
    """
    工具调用代理 - 使用结构化工具调用的智能代理

    模型以 JSON 形式给出工具调用；同一步内的多个工具调用在有界线程池中并发执行，
    全部完成后（按调用顺序汇总结果）步骤才结束。

    参数:
        tools (`list[Tool]`): 代理可以使用的工具列表
        model (`Model`): 生成代理行动的模型
        prompt_templates ([`~agents.PromptTemplates`], *可选*): 提示模板集合
        planning_interval (`int`, *可选*): 执行规划步骤的间隔
        max_tool_threads (`int`, *可选*): 并发执行工具调用的最大线程数，默认由 ThreadPoolExecutor 决定
        **kwargs: 其他关键字参数
    """

    def __init__(
        self,
        tools: list[Tool],
        model: Model,
        prompt_templates: PromptTemplates | None = None,
        planning_interval: int | None = None,
        max_tool_threads: int | None = None,
        **kwargs,
    ):
        if max_tool_threads is not None and max_tool_threads < 1:
            raise ValueError(f"max_tool_threads must be at least 1, got {max_tool_threads}")
        self.max_tool_threads = max_tool_threads
        prompt_templates = prompt_templates or load_prompt_templates("toolcalling_agent.yaml")
        super().__init__(
            tools=tools,
            model=model,
            prompt_templates=prompt_templates,
            planning_interval=planning_interval,
            **kwargs,
        )

    def initialize_system_prompt(self) -> str:
        return populate_template(self.prompt_templates["system_prompt"], variables={"tools": self.tools})

    def _step_stream(self, memory_step: ActionStep) -> Generator[FinalOutput]:
        input_messages = self.write_memory_to_messages().copy()
        memory_step.model_input_messages = input_messages

        try:
            chat_message: ChatMessage = self.model.generate(
                input_messages,
                stop_sequences=["Observation:", "Calling tools:"],
                tools_to_call_from=list(self.tools.values()),
            )
        except AgentGenerationError:
            raise
        except Exception as e:
            raise AgentGenerationError(f"Error while generating output:\n{e}", self.logger) from e

        model_output = chat_message.content
        self.logger.log_markdown(
            content=model_output if model_output else str(chat_message.raw),
            title="Output message of the LLM:",
            level=LogLevel.DEBUG,
        )
        memory_step.model_output_message = chat_message
        memory_step.model_output = model_output
        memory_step.token_usage = chat_message.token_usage

        if not chat_message.tool_calls:
            try:
                chat_message = self.model.parse_tool_calls(chat_message)
            except Exception as e:
                raise AgentParsingError(f"Error while parsing tool call from model output: {e}", self.logger)
        else:
            for tool_call in chat_message.tool_calls:
                tool_call.function.arguments = parse_json_if_needed(tool_call.function.arguments)

        tool_calls = [
            ToolCall(name=tool_call.function.name, arguments=tool_call.function.arguments, id=tool_call.id)
            for tool_call in chat_message.tool_calls
        ]
        memory_step.tool_calls = tool_calls
        memory_step.model_output = "\n".join(
            f"Called Tool: '{tool_call.name}' with arguments: {tool_call.arguments}" for tool_call in tool_calls
        )

        final_answer_calls = [tool_call for tool_call in tool_calls if tool_call.name == "final_answer"]
        if len(final_answer_calls) > 1:
            raise AgentToolExecutionError(
                "You returned multiple final answers. Please return only one single final answer!", self.logger
            )
        other_calls = [tool_call for tool_call in tool_calls if tool_call.name != "final_answer"]

        # 先执行其他工具，final_answer 在它们全部成功后才生效
        if other_calls:
            outcomes = self.process_tool_calls(other_calls)
            observations = []
            for tool_call, result in zip(other_calls, outcomes):
                if isinstance(result, AgentError):
                    continue
                observation = str(result).strip()
                if len(other_calls) > 1:
                    observation = f"Output of call {tool_call.id} to '{tool_call.name}':\n{observation}"
                observations.append(observation)
            if observations:
                memory_step.observations = "\n".join(observations)
                self.logger.log(
                    f"Observations: {memory_step.observations.replace('[', '|')}",  # 转义 rich 标记
                    level=LogLevel.INFO,
                )
            errors = [result for result in outcomes if isinstance(result, AgentError)]
            if errors:
                raise errors[0]

        if final_answer_calls:
            final_answer = self._resolve_final_answer(final_answer_calls[0].arguments)
            memory_step.action_output = final_answer
            memory_step.is_final_answer = True
            yield FinalOutput(output=final_answer)
        else:
            yield FinalOutput(output=None)

    def _resolve_final_answer(self, tool_arguments: Any) -> Any:
        self.logger.log(
            Panel(Text(f"Calling tool: 'final_answer' with arguments: {tool_arguments}")),
            level=LogLevel.INFO,
        )
        answer = (
            tool_arguments["answer"] if isinstance(tool_arguments, dict) and "answer" in tool_arguments else tool_arguments
        )
        if isinstance(answer, str) and answer in self.state.keys():
            # 答案是状态变量名时直接返回变量的值
            final_answer = self.state[answer]
            self.logger.log(
                f"[bold {YELLOW_HEX}]Final answer:[/bold {YELLOW_HEX}] Extracting key '{answer}' from state to return value '{final_answer}'.",
                level=LogLevel.INFO,
            )
        else:
            final_answer = self.execute_tool_call("final_answer", tool_arguments)
            self.logger.log(Text(f"Final answer: {final_answer}", style=f"bold {YELLOW_HEX}"), level=LogLevel.INFO)
        return final_answer

    def process_tool_calls(self, tool_calls: list[ToolCall]) -> list[Any]:
        """
        并发执行一步中的工具调用

        参数:
            tool_calls (list[ToolCall]): 本步解析出的工具调用

        返回:
            list: 与 tool_calls 一一对应的结果，调用失败时为对应的 AgentError
        """
        for tool_call in tool_calls:
            self.logger.log(
                Panel(Text(f"Calling tool: '{tool_call.name}' with arguments: {tool_call.arguments}")),
                level=LogLevel.INFO,
            )
            self.emit(ToolCallRequested(tool_name=tool_call.name, arguments=tool_call.arguments))

        def run_tool_call(tool_call: ToolCall) -> Any:
            try:
                return self.execute_tool_call(tool_call.name, tool_call.arguments or {})
            except AgentError as e:
                return e

        if len(tool_calls) == 1:
            outcomes = [run_tool_call(tool_calls[0])]
        else:
            # with 块退出时所有调用都已完成
            with ThreadPoolExecutor(max_workers=self.max_tool_threads) as executor:
                outcomes = list(executor.map(run_tool_call, tool_calls))

        # 完成事件在调用线程中按调用顺序发布
        for tool_call, result in zip(tool_calls, outcomes):
            if isinstance(result, AgentError):
                self.emit(ToolCallCompleted(tool_name=tool_call.name, error=str(result)))
            else:
                self.emit(ToolCallCompleted(tool_name=tool_call.name, result=result))
        return outcomes

    def _substitute_state_variables(self, arguments: dict[str, str] | str) -> dict[str, Any] | str:
        """Replace string values in arguments with their corresponding state values if they exist."""
        if isinstance(arguments, dict):
            return {
                key: self.state.get(value, value) if isinstance(value, str) else value
                for key, value in arguments.items()
            }
        return arguments

    def execute_tool_call(self, tool_name: str, arguments: dict[str, str] | str) -> Any:
        """
        Execute a tool with the provided arguments.

        The arguments are replaced with the actual values from the state if they refer to state variables.

        Args:
            tool_name (`str`): Name of the tool to execute.
            arguments (dict[str, str] | str): Arguments passed to the tool call.
        """
        if tool_name not in self.tools:
            raise AgentToolExecutionError(
                f"Unknown tool {tool_name}, should be one of: {', '.join(self.tools)}.", self.logger
            )
        tool = self.tools[tool_name]
        arguments = self._substitute_state_variables(arguments)
        try:
            if isinstance(arguments, dict):
                return tool(**arguments)
            elif isinstance(arguments, str):
                return tool(arguments)
            else:
                raise TypeError(f"Unsupported arguments type: {type(arguments)}")
        except TypeError as e:
            description = getattr(tool, "description", "No description")
            error_msg = (
                f"Invalid call to tool '{tool_name}' with arguments {json.dumps(arguments, default=str)}: {e}\n"
                "You should call this tool with correct input arguments.\n"
                f"Expected inputs: {json.dumps(tool.inputs)}\n"
                f"Returns output type: {tool.output_type}\n"
                f"Tool description: '{description}'"
            )
            raise AgentToolCallError(error_msg, self.logger) from e
        except Exception as e:
            error_msg = (
                f"Error executing tool '{tool_name}' with arguments {json.dumps(arguments, default=str)}: {type(e).__name__}: {e}\n"
                "Please try again or use another tool"
            )
            raise AgentToolExecutionError(error_msg, self.logger) from e


class CodeAgent(MultiStepAgent):
    """
    代码执行代理 - 通过生成和执行代码来解决任务的智能代理

    模型以 Python 代码块的形式给出行动，代码在 LocalPythonExecutor 中受限执行，
    工具以函数的形式提供给代码。

    参数:
        tools (`list[Tool]`): 代理可以使用的工具列表
        model (`Model`): 生成代理行动的模型
        prompt_templates ([`~agents.PromptTemplates`], *可选*): 提示模板集合
        additional_authorized_imports (`list[str]`, *可选*): 额外允许导入的模块，"*" 表示全部
        planning_interval (`int`, *可选*): 执行规划步骤的间隔
        max_print_outputs_length (`int`, *可选*): 打印输出的最大长度
        **kwargs: 其他关键字参数
    """

    def __init__(
        self,
        tools: list[Tool],
        model: Model,
        prompt_templates: PromptTemplates | None = None,
        additional_authorized_imports: list[str] | None = None,
        planning_interval: int | None = None,
        max_print_outputs_length: int | None = None,
        **kwargs,
    ):
        self.additional_authorized_imports = additional_authorized_imports if additional_authorized_imports else []
        self.authorized_imports = sorted(set(BASE_BUILTIN_MODULES) | set(self.additional_authorized_imports))
        self.max_print_outputs_length = max_print_outputs_length
        prompt_templates = prompt_templates or load_prompt_templates("code_agent.yaml")
        super().__init__(
            tools=tools,
            model=model,
            prompt_templates=prompt_templates,
            planning_interval=planning_interval,
            **kwargs,
        )
        if "*" in self.additional_authorized_imports:
            self.logger.log(
                "Caution: you set an authorization for all imports, meaning your agent can decide to import any package it deems necessary. This might raise issues if the package is not installed in your environment.",
                level=LogLevel.INFO,
            )
        self.python_executor = LocalPythonExecutor(
            self.additional_authorized_imports,
            max_print_outputs_length=self.max_print_outputs_length,
        )

    def initialize_system_prompt(self) -> str:
        return populate_template(
            self.prompt_templates["system_prompt"],
            variables={
                "tools": self.tools,
                "authorized_imports": (
                    "You can import from any package you want."
                    if "*" in self.authorized_imports
                    else str(self.authorized_imports)
                ),
            },
        )

    def _step_stream(self, memory_step: ActionStep) -> Generator[FinalOutput]:
        input_messages = self.write_memory_to_messages().copy()
        memory_step.model_input_messages = input_messages

        ### 生成模型输出 ###
        try:
            chat_message: ChatMessage = self.model.generate(
                input_messages,
                stop_sequences=["<end_code>", "Observation:", "Calling tools:"],
            )
        except AgentGenerationError:
            raise
        except Exception as e:
            raise AgentGenerationError(f"Error in generating model output:\n{e}", self.logger) from e
        memory_step.model_output_message = chat_message
        output_text = chat_message.content
        self.logger.log_markdown(content=output_text, title="Output message of the LLM:", level=LogLevel.DEBUG)

        # 补上 <end_code>，引导后续生成以它结束
        if output_text and output_text.strip().endswith("```"):
            output_text += "<end_code>"
            memory_step.model_output_message.content = output_text
        memory_step.token_usage = chat_message.token_usage
        memory_step.model_output = output_text

        ### 解析代码 ###
        try:
            code_action = fix_final_answer_code(parse_code_blobs(output_text or ""))
        except Exception as e:
            error_msg = f"Error in code parsing:\n{e}\nMake sure to provide correct code blobs."
            raise AgentParsingError(error_msg, self.logger)

        memory_step.code_action = code_action
        memory_step.tool_calls = [
            ToolCall(
                name="python_interpreter",
                arguments=code_action,
                id=f"call_{len(self.memory.steps)}",
            )
        ]

        ### 执行代码 ###
        self.logger.log_code(title="Executing parsed code:", content=code_action, level=LogLevel.INFO)
        execution_outputs_console = []
        try:
            output, execution_logs, is_final_answer = self.python_executor(code_action)
        except Exception as e:
            execution_logs = getattr(e, "logs", "")
            if execution_logs:
                memory_step.observations = "Execution logs:\n" + execution_logs
                self.logger.log(
                    Group(Text("Execution logs:", style="bold"), Text(execution_logs)), level=LogLevel.INFO
                )
            error_msg = str(e)
            if "Import of " in error_msg and " is not allowed" in error_msg:
                self.logger.log(
                    "[bold red]Warning to user: Code execution failed due to an unauthorized import - Consider passing said import under `additional_authorized_imports` when initializing your CodeAgent.",
                    level=LogLevel.INFO,
                )
            raise AgentExecutionError(error_msg, self.logger)

        if execution_logs:
            execution_outputs_console += [Text("Execution logs:", style="bold"), Text(execution_logs)]
        truncated_output = truncate_content(str(output))
        memory_step.observations = (
            "Execution logs:\n" + execution_logs + "Last output from code snippet:\n" + truncated_output
        )
        execution_outputs_console += [
            Text(
                f"{('Out - Final answer' if is_final_answer else 'Out')}: {truncated_output}",
                style=(f"bold {YELLOW_HEX}" if is_final_answer else ""),
            ),
        ]
        self.logger.log(Group(*execution_outputs_console), level=LogLevel.INFO)
        memory_step.action_output = output
        memory_step.is_final_answer = is_final_answer
        yield FinalOutput(output=output if is_final_answer else None)
