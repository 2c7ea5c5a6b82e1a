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
内存管理模块 - 代理的步骤记录

代理每次运行都会把任务、规划、行动和最终答案按时间顺序追加到 AgentMemory.steps，
这一序列只追加、不修改。内存可以转换回模型输入消息，也可以序列化、统计和回放。

主要类：
- AgentMemory: 步骤序列的所有者
- ActionStep: 一次 生成 -> 解析 -> 执行 -> 观察 的完整记录
- PlanningStep / TaskStep / SystemPromptStep / FinalAnswerStep
- ToolCall: 步骤中的一次工具调用

作者: HuggingFace 团队
版本: 1.0
"""

from dataclasses import asdict, dataclass
from logging import getLogger
from typing import TYPE_CHECKING, Any, TypedDict

from smolagents.models import ChatMessage, MessageRole
from smolagents.monitoring import AgentLogger, LogLevel, Timing, TokenUsage
from smolagents.utils import AgentError, make_json_serializable


if TYPE_CHECKING:
    import PIL.Image


__all__ = ["AgentMemory"]


logger = getLogger(__name__)

# 粗略估算：平均每 4 个字符约 1 个令牌
CHARS_PER_TOKEN = 4

RETRY_GUIDANCE = (
    "Now let's retry: take care not to repeat previous errors! "
    "If you have retried several times, try a completely different approach.\n"
)


class Message(TypedDict):
    role: MessageRole
    content: str | list[dict[str, Any]]


@dataclass
class ToolCall:
    name: str
    arguments: Any
    id: str

    def dict(self):
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": make_json_serializable(self.arguments),
            },
        }


@dataclass
class MemoryStep:
    def dict(self):
        return asdict(self)

    def to_messages(self, summary_mode: bool = False) -> list[Message]:
        raise NotImplementedError


@dataclass
class ActionStep(MemoryStep):
    """
    行动步骤

    属性:
        step_number (int): 步骤序号，从 1 开始单调递增
        timing (Timing): 步骤的起止时间
        model_input_messages (list[Message] | None): 本步发送给模型的消息
        tool_calls (list[ToolCall] | None): 本步解析出的工具调用
        error (AgentError | None): 本步记录的可恢复错误
        model_output_message (ChatMessage | None): 模型原始输出
        model_output (str | None): 模型输出文本
        code_action (str | None): CodeAgent 解析出的代码
        observations (str | None): 执行后的观察文本
        observations_images (list[PIL.Image.Image] | None): 观察中的图像
        action_output (Any): 执行结果；is_final_answer 为真时即最终答案
        token_usage (TokenUsage | None): 本步的令牌消耗
        is_final_answer (bool): 本步是否产生了最终答案
        guidance (str | None): 评估或重复检测给出的提示，作为下一步的用户消息
    """

    step_number: int
    timing: Timing
    model_input_messages: list[Message] | None = None
    tool_calls: list[ToolCall] | None = None
    error: AgentError | None = None
    model_output_message: ChatMessage | None = None
    model_output: str | None = None
    code_action: str | None = None
    observations: str | None = None
    observations_images: list["PIL.Image.Image"] | None = None
    action_output: Any = None
    token_usage: TokenUsage | None = None
    is_final_answer: bool = False
    guidance: str | None = None

    def dict(self):
        # tool_calls 与 action_output 需要手动序列化
        return {
            "model_input_messages": self.model_input_messages,
            "tool_calls": [tc.dict() for tc in self.tool_calls] if self.tool_calls else [],
            "timing": self.timing.dict(),
            "token_usage": self.token_usage.dict() if self.token_usage else None,
            "step": self.step_number,
            "error": self.error.dict() if self.error else None,
            "model_output_message": self.model_output_message.dict() if self.model_output_message else None,
            "model_output": self.model_output,
            "code_action": self.code_action,
            "observations": self.observations,
            "action_output": make_json_serializable(self.action_output),
            "is_final_answer": self.is_final_answer,
            "guidance": self.guidance,
        }

    def to_messages(self, summary_mode: bool = False) -> list[Message]:
        messages = []
        if self.model_output is not None and not summary_mode:
            messages.append(
                Message(role=MessageRole.ASSISTANT, content=[{"type": "text", "text": self.model_output.strip()}])
            )

        if self.tool_calls is not None:
            messages.append(
                Message(
                    role=MessageRole.TOOL_CALL,
                    content=[
                        {
                            "type": "text",
                            "text": "Calling tools:\n" + str([tc.dict() for tc in self.tool_calls]),
                        }
                    ],
                )
            )

        if self.observations_images:
            messages.append(
                Message(
                    role=MessageRole.USER,
                    content=[{"type": "image", "image": image} for image in self.observations_images],
                )
            )

        if self.observations is not None:
            messages.append(
                Message(
                    role=MessageRole.TOOL_RESPONSE,
                    content=[{"type": "text", "text": f"Observation:\n{self.observations}"}],
                )
            )

        if self.error is not None:
            error_message = "Error:\n" + str(self.error) + "\n" + RETRY_GUIDANCE
            message_content = f"Call id: {self.tool_calls[0].id}\n" if self.tool_calls else ""
            message_content += error_message
            messages.append(
                Message(role=MessageRole.TOOL_RESPONSE, content=[{"type": "text", "text": message_content}])
            )

        if self.guidance is not None:
            messages.append(Message(role=MessageRole.USER, content=[{"type": "text", "text": self.guidance}]))

        return messages


@dataclass
class PlanningStep(MemoryStep):
    model_input_messages: list[Message]
    model_output_message: ChatMessage
    plan: str
    timing: Timing
    token_usage: TokenUsage | None = None

    def dict(self):
        return {
            "model_input_messages": self.model_input_messages,
            "model_output_message": self.model_output_message.dict(),
            "plan": self.plan,
            "timing": self.timing.dict(),
            "token_usage": self.token_usage.dict() if self.token_usage else None,
        }

    def to_messages(self, summary_mode: bool = False) -> list[Message]:
        if summary_mode:
            return []
        return [
            Message(role=MessageRole.ASSISTANT, content=[{"type": "text", "text": self.plan.strip()}]),
            # 切换角色，避免模型继续续写计划
            Message(role=MessageRole.USER, content=[{"type": "text", "text": "Now proceed and carry out this plan."}]),
        ]


@dataclass
class TaskStep(MemoryStep):
    task: str
    task_images: list["PIL.Image.Image"] | None = None

    def to_messages(self, summary_mode: bool = False) -> list[Message]:
        content = [{"type": "text", "text": f"New task:\n{self.task}"}]
        if self.task_images:
            for image in self.task_images:
                content.append({"type": "image", "image": image})

        return [Message(role=MessageRole.USER, content=content)]


@dataclass
class SystemPromptStep(MemoryStep):
    system_prompt: str

    def to_messages(self, summary_mode: bool = False) -> list[Message]:
        if summary_mode:
            return []
        return [Message(role=MessageRole.SYSTEM, content=[{"type": "text", "text": self.system_prompt}])]


@dataclass
class FinalAnswerStep(MemoryStep):
    output: Any


class AgentMemory:
    """
    代理内存：系统提示加上一个只追加的步骤序列

    参数:
        system_prompt (str): 系统提示内容
        token_budget (int, 可选): 上下文令牌预算，仅用于 stats() 中的预算统计

    使用示例:
        memory = AgentMemory("You are a helpful assistant.")
        memory.append(TaskStep(task="Compute 2+2"))
        memory.stats()["step_count"]  # 1
    """

    def __init__(self, system_prompt: str, token_budget: int | None = None):
        self.system_prompt = SystemPromptStep(system_prompt=system_prompt)
        self.steps: list[TaskStep | ActionStep | PlanningStep] = []
        self.token_budget = token_budget

    def reset(self):
        self.steps = []

    def append(self, step: MemoryStep):
        """
        追加一个步骤

        异常:
            ValueError: ActionStep 的序号没有严格递增时抛出
        """
        if isinstance(step, ActionStep):
            previous = self.action_steps
            if previous and step.step_number <= previous[-1].step_number:
                raise ValueError(
                    f"Step number {step.step_number} must be greater than the last recorded step "
                    f"({previous[-1].step_number})."
                )
        self.steps.append(step)

    @property
    def action_steps(self) -> list[ActionStep]:
        return [step for step in self.steps if isinstance(step, ActionStep)]

    def get_succinct_steps(self) -> list[dict]:
        return [
            {key: value for key, value in step.dict().items() if key != "model_input_messages"} for step in self.steps
        ]

    def get_full_steps(self) -> list[dict]:
        return [step.dict() for step in self.steps]

    def return_full_code(self) -> str:
        """Returns all code actions from the agent's steps, concatenated as a single script."""
        return "\n\n".join(step.code_action for step in self.action_steps if step.code_action is not None)

    def to_messages(self, summary_mode: bool = False) -> list[Message]:
        messages = self.system_prompt.to_messages(summary_mode=summary_mode)
        for memory_step in self.steps:
            messages.extend(memory_step.to_messages(summary_mode=summary_mode))
        return messages

    def estimated_tokens(self) -> int:
        total_chars = 0
        for message in self.to_messages():
            content = message["content"]
            if isinstance(content, str):
                total_chars += len(content)
            else:
                total_chars += sum(len(element.get("text", "")) for element in content)
        return total_chars // CHARS_PER_TOKEN

    def stats(self) -> dict[str, Any]:
        """
        返回步骤计数与上下文预算信息

        返回:
            dict: step_count、action_step_count、task_step_count、planning_step_count、
            error_count、estimated_tokens、budget、headroom、over_budget
        """
        estimated_tokens = self.estimated_tokens()
        if self.token_budget is not None and estimated_tokens > self.token_budget:
            logger.warning("Memory holds ~%d tokens, over the budget of %d", estimated_tokens, self.token_budget)
        return {
            "step_count": len(self.steps),
            "action_step_count": len(self.action_steps),
            "task_step_count": sum(isinstance(step, TaskStep) for step in self.steps),
            "planning_step_count": sum(isinstance(step, PlanningStep) for step in self.steps),
            "error_count": sum(step.error is not None for step in self.action_steps),
            "estimated_tokens": estimated_tokens,
            "budget": self.token_budget,
            "headroom": None if self.token_budget is None else self.token_budget - estimated_tokens,
            "over_budget": self.token_budget is not None and estimated_tokens > self.token_budget,
        }

    def replay(self, logger: AgentLogger, detailed: bool = False):
        """
        在控制台中回放代理的步骤

        参数:
            logger (AgentLogger): 用于打印的日志记录器
            detailed (bool, 默认 False): 是否同时打印每一步的模型输入消息，输出会很长
        """
        logger.console.log("Replaying the agent's steps:")
        logger.log_markdown(title="System prompt", content=self.system_prompt.system_prompt, level=LogLevel.ERROR)
        for step in self.steps:
            if isinstance(step, TaskStep):
                logger.log_task(step.task, "", level=LogLevel.ERROR)
            elif isinstance(step, ActionStep):
                logger.log_rule(f"Step {step.step_number}", level=LogLevel.ERROR)
                if detailed and step.model_input_messages is not None:
                    logger.log_messages(step.model_input_messages, level=LogLevel.ERROR)
                if step.model_output is not None:
                    logger.log_markdown(title="Agent output:", content=step.model_output, level=LogLevel.ERROR)
                if step.error is not None:
                    logger.log_error(str(step.error))
            elif isinstance(step, PlanningStep):
                logger.log_rule("Planning step", level=LogLevel.ERROR)
                if detailed and step.model_input_messages is not None:
                    logger.log_messages(step.model_input_messages, level=LogLevel.ERROR)
                logger.log_markdown(title="Agent output:", content=step.plan, level=LogLevel.ERROR)
