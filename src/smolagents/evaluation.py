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
评估模块 - 步骤之后的进度评估与重复检测

评估阶段在没有给出最终答案的步骤之后，用一次很短的模型调用判断任务
是否已经完成（DONE）、需要继续（CONTINUE）或陷入僵局（STUCK）。
重复检测检查最近几步是否在重复同样的工具调用、同样的代码或同样的观察，
发现循环时生成提示，注入到下一步的模型输入中。

两者都是 MultiStepAgent 的可选功能，默认关闭。

作者: HuggingFace 团队
版本: 1.0
"""

import re
from dataclasses import dataclass
from logging import getLogger
from typing import Any, Literal

from jinja2 import StrictUndefined, Template

from .memory import ActionStep
from .models import ChatMessage, MessageRole
from .monitoring import TokenUsage


__all__ = [
    "EvaluationResult",
    "RepetitionResult",
    "build_evaluation_messages",
    "parse_evaluation",
    "step_observation",
    "check_repetition",
    "string_similarity",
]

logger = getLogger(__name__)

EVALUATION_SYSTEM_PROMPT = "You evaluate task completion. Be decisive. One line only."

EVALUATION_PROMPT = """TASK: {{task}}
STEPS COMPLETED: {{step_count}}
LAST RESULT: {{observation}}

Is the task complete? Reply with EXACTLY one of:
DONE: <the final answer>
CONTINUE: <what's still needed>
STUCK: <what's blocking>
"""

# 评估调用只需要一行回答
EVALUATION_MAX_TOKENS = 100
MAX_OBSERVATION_LENGTH = 500

EVALUATION_PATTERN = re.compile(r"\A(DONE|CONTINUE|STUCK):\s*(.+)", re.IGNORECASE | re.DOTALL)

REPETITION_GUIDANCE = {
    "tool_call": (
        "You've called '{tool_name}' {count} times with the same arguments.\n"
        "This suggests you're stuck in a loop. Try one of:\n"
        "1. Use a different approach or tool\n"
        "2. Modify your arguments\n"
        "3. Call final_answer with what you have so far"
    ),
    "code_action": (
        "You've executed the same code {count} times in a row.\n"
        "The approach isn't working. Try:\n"
        "1. A different algorithm or method\n"
        "2. Breaking the problem into smaller steps\n"
        "3. Calling final_answer with partial progress"
    ),
    "observation": (
        "You've received the same result {count} times.\n"
        "You may be stuck. Consider:\n"
        "1. Using different inputs or parameters\n"
        "2. Trying a different tool\n"
        "3. Concluding with final_answer"
    ),
}


@dataclass
class EvaluationResult:
    """
    一次评估的结果

    属性:
        status (str): "done"、"continue" 或 "stuck"
        answer (str | None): status 为 "done" 时模型给出的最终答案
        reasoning (str | None): 其余情况下模型给出的理由
        token_usage (TokenUsage | None): 评估调用的令牌消耗
    """

    status: Literal["done", "continue", "stuck"]
    answer: str | None = None
    reasoning: str | None = None
    token_usage: TokenUsage | None = None

    @property
    def guidance(self) -> str | None:
        if self.status == "stuck" and self.reasoning:
            return f"[Evaluation] You appear to be stuck: {self.reasoning}\nTry a different approach."
        return None


@dataclass
class RepetitionResult:
    pattern: Literal["tool_call", "code_action", "observation"]
    count: int
    guidance: str


def step_observation(step: ActionStep) -> str:
    """取出步骤的观察文本，用于评估提示，过长时截断"""
    if step.observations is not None:
        observation = step.observations
    elif step.error is not None:
        observation = f"Error: {step.error}"
    else:
        observation = str(step.action_output)
    return observation[:MAX_OBSERVATION_LENGTH]


def build_evaluation_messages(task: str, step_count: int, observation: str) -> list[ChatMessage]:
    prompt = Template(EVALUATION_PROMPT, undefined=StrictUndefined).render(
        task=task, step_count=step_count, observation=observation
    )
    return [
        ChatMessage(role=MessageRole.SYSTEM, content=EVALUATION_SYSTEM_PROMPT),
        ChatMessage(role=MessageRole.USER, content=prompt),
    ]


def parse_evaluation(content: str | None, token_usage: TokenUsage | None = None) -> EvaluationResult:
    """
    解析评估回答

    参数:
        content (str | None): 模型的原始回答
        token_usage (TokenUsage | None): 评估调用的令牌消耗

    返回:
        EvaluationResult: 无法识别的回答按 "continue" 处理，原文作为理由
    """
    content = (content or "").strip()
    match = EVALUATION_PATTERN.match(content)
    if match is None:
        return EvaluationResult(status="continue", reasoning=content or None, token_usage=token_usage)
    status = match.group(1).lower()
    text = match.group(2).strip()
    if status == "done":
        return EvaluationResult(status="done", answer=text, token_usage=token_usage)
    return EvaluationResult(status=status, reasoning=text, token_usage=token_usage)


def _trigrams(text: str) -> set[str]:
    return {text[i : i + 3] for i in range(len(text) - 2)}


def string_similarity(a: str, b: str) -> float:
    """字符三元组上的 Jaccard 相似度，取值 0.0 到 1.0"""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    trigrams_a, trigrams_b = _trigrams(a), _trigrams(b)
    union = trigrams_a | trigrams_b
    if not union:
        return 0.0
    return len(trigrams_a & trigrams_b) / len(union)


def _normalize_arguments(arguments: Any) -> Any:
    if isinstance(arguments, dict):
        return tuple(sorted((str(key), str(value).strip().lower()) for key, value in arguments.items()))
    return str(arguments).strip().lower()


def _normalize_code(code: str) -> str:
    return " ".join(code.split())


def _detect_tool_call_repetition(window: list[ActionStep]) -> RepetitionResult | None:
    # 代码步骤的 python_interpreter 调用由代码重复检测处理
    signatures = [
        tuple((tool_call.name, _normalize_arguments(tool_call.arguments)) for tool_call in step.tool_calls)
        for step in window
        if step.tool_calls and step.code_action is None
    ]
    if len(signatures) < 2 or len(set(signatures)) != 1:
        return None
    tool_name = signatures[-1][0][0]
    count = len(signatures)
    return RepetitionResult(
        pattern="tool_call",
        count=count,
        guidance=REPETITION_GUIDANCE["tool_call"].format(tool_name=tool_name, count=count),
    )


def _detect_code_action_repetition(window: list[ActionStep]) -> RepetitionResult | None:
    code_actions = [_normalize_code(step.code_action) for step in window if step.code_action]
    if len(code_actions) < 2 or len(set(code_actions)) != 1:
        return None
    count = len(code_actions)
    return RepetitionResult(
        pattern="code_action", count=count, guidance=REPETITION_GUIDANCE["code_action"].format(count=count)
    )


def _detect_observation_repetition(window: list[ActionStep], threshold: float) -> RepetitionResult | None:
    observations = [step.observations for step in window if step.observations]
    if len(observations) < 2:
        return None
    first = observations[0]
    if not all(string_similarity(first, observation) >= threshold for observation in observations):
        return None
    count = len(observations)
    return RepetitionResult(
        pattern="observation", count=count, guidance=REPETITION_GUIDANCE["observation"].format(count=count)
    )


def check_repetition(
    steps: list[ActionStep], window_size: int = 3, similarity_threshold: float = 0.9
) -> RepetitionResult | None:
    """
    检查最近的步骤是否陷入重复

    依次检查三种模式：相同参数的相同工具调用、相同的代码、相似的观察。

    参数:
        steps (list[ActionStep]): 按顺序排列的行动步骤
        window_size (int): 检查最近多少步，步骤不足时不做判断
        similarity_threshold (float): 观察相似度阈值

    返回:
        RepetitionResult | None: 发现重复时返回结果，否则为 None
    """
    if window_size < 2 or len(steps) < window_size:
        return None
    window = steps[-window_size:]
    result = (
        _detect_tool_call_repetition(window)
        or _detect_code_action_repetition(window)
        or _detect_observation_repetition(window, similarity_threshold)
    )
    if result is not None:
        logger.debug("Repetition detected in the last %d steps: %s x%d", window_size, result.pattern, result.count)
    return result
