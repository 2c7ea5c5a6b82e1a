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
工具函数模块 - smolagents 的通用工具和异常定义

本模块包含代理系统中各组件共享的基础设施：
- AgentError 异常层次结构（解析、执行、生成、工具调用等错误）
- 可靠性层使用的异常（熔断、限流、全部模型失败、队列已满）
- 代码块 / JSON 块解析函数
- 内容截断、JSON 序列化、图像编码等辅助函数

作者: HuggingFace 团队
版本: 1.0
"""

import ast
import base64
import json
import keyword
import re
from io import BytesIO
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from smolagents.monitoring import AgentLogger


__all__ = ["AgentError", "AgentGenerationError", "CircuitOpenError", "AllModelsFailedError", "QueueFullError", "RateLimitExceeded"]


BASE_BUILTIN_MODULES = [
    "collections",
    "datetime",
    "itertools",
    "math",
    "queue",
    "random",
    "re",
    "stat",
    "statistics",
    "time",
    "unicodedata",
]


def escape_code_brackets(text: str) -> str:
    """Escapes square brackets in code segments while preserving Rich styling tags."""

    def replace_bracketed_content(match):
        content = match.group(1)
        cleaned = re.sub(
            r"bold|red|green|blue|yellow|magenta|cyan|white|black|italic|dim|\s|#[0-9a-fA-F]{6}", "", content
        )
        return f"\\[{content}]" if cleaned.strip() else f"[{content}]"

    return re.sub(r"\[([^\]]*)\]", replace_bracketed_content, text)


class AgentError(Exception):
    """
    代理异常基类

    创建时会通过代理日志记录器以红色粗体输出错误信息，
    并可通过 dict() 序列化到步骤记录中。

    参数:
        message (str): 错误信息
        logger (AgentLogger): 用于输出错误的日志记录器
    """

    def __init__(self, message, logger: "AgentLogger"):
        super().__init__(message)
        self.message = message
        logger.log_error(message)

    def dict(self) -> dict[str, str]:
        return {"type": self.__class__.__name__, "message": str(self.message)}


class AgentParsingError(AgentError):
    """Exception raised for errors in parsing in the agent"""

    pass


class AgentExecutionError(AgentError):
    """Exception raised for errors in execution in the agent"""

    pass


class AgentMaxStepsError(AgentError):
    """Exception raised for errors in execution in the agent"""

    pass


class AgentToolCallError(AgentExecutionError):
    """Exception raised for errors when incorrect arguments are passed to the tool"""

    pass


class AgentToolExecutionError(AgentExecutionError):
    """Exception raised for errors when executing a tool"""

    pass


class AgentGenerationError(AgentError):
    """Exception raised for errors in generation in the agent"""

    pass


class CircuitOpenError(AgentGenerationError):
    """
    熔断器打开时拒绝调用所抛出的异常

    属性:
        circuit_name (str): 被熔断的服务名称
        cool_off_until (float | None): 冷却结束的时钟读数
    """

    def __init__(self, circuit_name: str, logger: "AgentLogger", cool_off_until: float | None = None):
        super().__init__(f"Service unavailable (circuit open): {circuit_name}", logger)
        self.circuit_name = circuit_name
        self.cool_off_until = cool_off_until


class AllModelsFailedError(AgentGenerationError):
    """
    回退链中所有模型均失败时抛出的聚合异常

    属性:
        errors (list[tuple[str, Exception]]): 每个模型的 (model_id, 最后一次错误)
    """

    def __init__(self, errors: list[tuple[str, Exception]], logger: "AgentLogger"):
        details = "\n".join(f"- {model_id}: {type(error).__name__}: {error}" for model_id, error in errors)
        super().__init__(f"All models failed after retries and failover:\n{details}", logger)
        self.errors = errors

    def dict(self) -> dict[str, Any]:
        return {
            **super().dict(),
            "errors": [{"model_id": model_id, "error": str(error)} for model_id, error in self.errors],
        }


class QueueFullError(AgentGenerationError):
    """Raised when a request queue already holds `max_depth` pending requests."""

    pass


class RateLimitExceeded(Exception):
    """
    令牌桶中没有足够令牌时抛出的异常

    属性:
        retry_after (float): 再次尝试前需要等待的秒数
        service (str | None): 被限流的服务名称
    """

    def __init__(self, retry_after: float, service: str | None = None):
        target = f" for {service}" if service else ""
        super().__init__(f"Rate limit exceeded{target}, retry after {retry_after:.2f}s")
        self.retry_after = retry_after
        self.service = service


def make_json_serializable(obj: Any) -> Any:
    """
    将对象递归转换为可 JSON 序列化的形式

    参数:
        obj (Any): 任意对象

    返回:
        Any: 可以直接传给 json.dumps 的对象
    """
    if obj is None:
        return None
    elif isinstance(obj, (str, int, float, bool)):
        # 尝试把看起来像 JSON 的字符串解析成对象
        if isinstance(obj, str):
            try:
                if (obj.startswith("{") and obj.endswith("}")) or (obj.startswith("[") and obj.endswith("]")):
                    parsed = json.loads(obj)
                    return make_json_serializable(parsed)
            except json.JSONDecodeError:
                pass
        return obj
    elif isinstance(obj, (list, tuple)):
        return [make_json_serializable(item) for item in obj]
    elif isinstance(obj, dict):
        return {str(k): make_json_serializable(v) for k, v in obj.items()}
    elif hasattr(obj, "__dict__"):
        return {"_type": obj.__class__.__name__, **{k: make_json_serializable(v) for k, v in obj.__dict__.items()}}
    else:
        return str(obj)


def parse_json_blob(json_blob: str) -> tuple[dict[str, str], str]:
    """Extracts the JSON blob from the input and returns the JSON data and the rest of the input."""
    try:
        first_accolade_index = json_blob.find("{")
        last_accolade_index = [a.start() for a in list(re.finditer("}", json_blob))][-1]
        json_str = json_blob[first_accolade_index : last_accolade_index + 1]
        json_data = json.loads(json_str, strict=False)
        return json_data, json_blob[:first_accolade_index]
    except IndexError:
        raise ValueError("The model output does not contain any JSON blob.")
    except json.JSONDecodeError as e:
        place = e.pos
        if json_str[place - 1 : place + 2] == "},\n":
            raise ValueError(
                "JSON is invalid: you probably tried to provide multiple tool calls in one action. PROVIDE ONLY ONE TOOL CALL."
            )
        raise ValueError(
            f"The JSON blob you used is invalid due to the following error: {e}.\n"
            f"JSON blob was: {json_str}, decoding failed on that specific part of the blob:\n"
            f"'{json_str[place - 4 : place + 5]}'."
        )


def extract_code_from_text(text: str) -> str | None:
    """Extract code from the LLM's output."""
    pattern = r"```(?:py|python)?\s*\n(.*?)\n```"
    matches = re.findall(pattern, text, re.DOTALL)
    if matches:
        return "\n\n".join(match.strip() for match in matches)
    return None


def parse_code_blobs(text: str) -> str:
    """
    从 LLM 输出中提取 Python 代码

    依次尝试：
    1. 围栏代码块（```py / ```python）
    2. 整段文本本身就是合法的 Python 代码

    参数:
        text (str): 模型输出文本

    返回:
        str: 提取出的代码

    异常:
        ValueError: 找不到合法代码时抛出，错误信息中包含正确格式的示例
    """
    code = extract_code_from_text(text)
    if code:
        return code

    try:
        ast.parse(text)
        return text
    except SyntaxError:
        pass

    if "final" in text and "answer" in text:
        raise ValueError(
            f"""
Your code snippet is invalid, because the regex pattern ```(?:py|python)?\\s*\\n(.*?)\\n``` was not found in it.
Here is your code snippet:
{text}
It seems like you're trying to return the final answer, you can do it as follows:
Code:
```py
final_answer("YOUR FINAL ANSWER HERE")
```<end_code>""".strip()
        )
    raise ValueError(
        f"""
Your code snippet is invalid, because the regex pattern ```(?:py|python)?\\s*\\n(.*?)\\n``` was not found in it.
Here is your code snippet:
{text}
Make sure to include code with the correct pattern, for instance:
Thoughts: Your thoughts
Code:
```py
# Your python code here
```<end_code>""".strip()
    )


MAX_LENGTH_TRUNCATE_CONTENT = 20000


def truncate_content(content: str, max_length: int = MAX_LENGTH_TRUNCATE_CONTENT) -> str:
    if len(content) <= max_length:
        return content
    else:
        return (
            content[: max_length // 2]
            + f"\n..._This content has been truncated to stay below {max_length} characters_...\n"
            + content[-max_length // 2 :]
        )


def is_valid_name(name: str) -> bool:
    return name.isidentifier() and not keyword.iskeyword(name) if isinstance(name, str) else False


def encode_image_base64(image):
    buffered = BytesIO()
    image.save(buffered, format="PNG")
    return base64.b64encode(buffered.getvalue()).decode("utf-8")


def make_image_url(base64_image):
    return f"data:image/png;base64,{base64_image}"
