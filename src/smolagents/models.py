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
模型模块 - smolagents 的 LLM 统一接口

本模块定义了代理与语言模型之间交换的消息结构，以及模型后端：
- ChatMessage / ChatMessageToolCall: 模型输入输出的数据结构
- Model: 所有模型的基类
- ApiModel: 远程 API 模型基类，附带健康检查
- OpenAIServerModel: OpenAI 兼容服务
- InferenceClientModel: Hugging Face Inference Providers

可靠性相关的包装（重试、熔断、回退链）见 reliability 模块。

作者: HuggingFace 团队
版本: 1.0
"""

import json
import logging
import os
import re
import time
import uuid
from copy import deepcopy
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from .monitoring import TokenUsage
from .utils import encode_image_base64, make_image_url, parse_json_blob


if TYPE_CHECKING:
    from .tools import Tool


logger = logging.getLogger(__name__)


def get_dict_from_nested_dataclasses(obj, ignore_key=None):
    def convert(obj):
        if hasattr(obj, "__dataclass_fields__"):
            return {k: convert(v) for k, v in asdict(obj).items() if k != ignore_key}
        return obj

    return convert(obj)


@dataclass
class ChatMessageToolCallDefinition:
    arguments: Any
    name: str
    description: str | None = None


@dataclass
class ChatMessageToolCall:
    """
    模型返回的一次工具调用

    属性:
        function (ChatMessageToolCallDefinition): 工具名称与参数
        id (str): 调用标识
        type (str): 通常为 "function"
    """

    function: ChatMessageToolCallDefinition
    id: str
    type: str

    def __str__(self) -> str:
        return f"Call: {self.id}: Calling {str(self.function.name)} with arguments: {str(self.function.arguments)}"


@dataclass
class ChatMessage:
    """
    对话中的一条消息

    属性:
        role (str): "user"、"assistant"、"system" 等
        content (str | None): 文本内容，纯工具调用时可以为空
        tool_calls (list[ChatMessageToolCall] | None): 工具调用列表
        raw (Any | None): API 原始响应
        token_usage (TokenUsage | None): 本次生成的令牌消耗
    """

    role: str
    content: str | None = None
    tool_calls: list[ChatMessageToolCall] | None = None
    raw: Any | None = None  # Stores the raw output from the API
    token_usage: TokenUsage | None = None

    def model_dump_json(self):
        return json.dumps(get_dict_from_nested_dataclasses(self, ignore_key="raw"))

    @classmethod
    def from_dict(cls, data: dict, raw: Any | None = None, token_usage: TokenUsage | None = None) -> "ChatMessage":
        if data.get("tool_calls"):
            tool_calls = [
                ChatMessageToolCall(
                    function=ChatMessageToolCallDefinition(**tc["function"]), id=tc["id"], type=tc["type"]
                )
                for tc in data["tool_calls"]
            ]
            data["tool_calls"] = tool_calls
        return cls(
            role=data["role"],
            content=data.get("content"),
            tool_calls=data.get("tool_calls"),
            raw=raw,
            token_usage=token_usage,
        )

    def dict(self):
        return get_dict_from_nested_dataclasses(self, ignore_key="raw")


def parse_json_if_needed(arguments: str | dict) -> str | dict:
    if isinstance(arguments, dict):
        return arguments
    else:
        try:
            return json.loads(arguments)
        except Exception:
            return arguments


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL_CALL = "tool-call"
    TOOL_RESPONSE = "tool-response"

    @classmethod
    def roles(cls):
        return [r.value for r in cls]


tool_role_conversions = {
    MessageRole.TOOL_CALL: MessageRole.ASSISTANT,
    MessageRole.TOOL_RESPONSE: MessageRole.USER,
}


def get_tool_json_schema(tool: "Tool") -> dict:
    """
    将 Tool 转换为 OpenAI 兼容的函数调用 JSON Schema

    "any" 类型映射为 "string"；未标记 nullable 的参数均为必填。
    """
    properties = deepcopy(tool.inputs)
    required = []
    for key, value in properties.items():
        if value["type"] == "any":
            value["type"] = "string"
        if not ("nullable" in value and value["nullable"]):
            required.append(key)
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


def remove_stop_sequences(content: str, stop_sequences: list[str]) -> str:
    for stop_seq in stop_sequences:
        if content[-len(stop_seq) :] == stop_seq:
            content = content[: -len(stop_seq)]
    return content


def get_clean_message_list(
    message_list: list[dict[str, str | list[dict]]],
    role_conversions: dict[MessageRole, MessageRole] | dict[str, str] = {},
    convert_images_to_image_urls: bool = False,
    flatten_messages_as_text: bool = False,
) -> list[dict[str, str | list[dict]]]:
    """
    清理消息列表，使其适配各家聊天接口

    - 按 role_conversions 转换角色（tool-call -> assistant 等）
    - 合并相同角色的连续消息
    - 编码图像
    - 可选地把内容扁平化为纯文本

    异常:
        ValueError: 出现未知角色时抛出
    """
    output_message_list: list[dict[str, str | list[dict]]] = []
    message_list = deepcopy(message_list)
    for message in message_list:
        if isinstance(message, ChatMessage):
            message = {"role": message.role, "content": [{"type": "text", "text": message.content or ""}]}
        role = message["role"]
        if role not in MessageRole.roles():
            raise ValueError(f"Incorrect role {role}, only {MessageRole.roles()} are supported for now.")

        if role in role_conversions:
            message["role"] = role_conversions[role]  # type: ignore
        if isinstance(message["content"], str):
            message["content"] = [{"type": "text", "text": message["content"]}]
        for element in message["content"]:
            assert isinstance(element, dict), "Error: this element should be a dict:" + str(element)
            if element["type"] == "image":
                assert not flatten_messages_as_text, f"Cannot use images with {flatten_messages_as_text=}"
                if convert_images_to_image_urls:
                    element.update(
                        {
                            "type": "image_url",
                            "image_url": {"url": make_image_url(encode_image_base64(element.pop("image")))},
                        }
                    )
                else:
                    element["image"] = encode_image_base64(element["image"])

        if len(output_message_list) > 0 and message["role"] == output_message_list[-1]["role"]:
            if flatten_messages_as_text:
                output_message_list[-1]["content"] += "\n" + message["content"][0]["text"]
            else:
                for el in message["content"]:
                    if el["type"] == "text" and output_message_list[-1]["content"][-1]["type"] == "text":
                        # 合并连续的文本片段
                        output_message_list[-1]["content"][-1]["text"] += "\n" + el["text"]
                    else:
                        output_message_list[-1]["content"].append(el)
        else:
            if flatten_messages_as_text:
                content = message["content"][0]["text"]
            else:
                content = message["content"]
            output_message_list.append({"role": message["role"], "content": content})
    return output_message_list


def get_tool_call_from_text(text: str, tool_name_key: str, tool_arguments_key: str) -> ChatMessageToolCall:
    tool_call_dictionary, _ = parse_json_blob(text)
    try:
        tool_name = tool_call_dictionary[tool_name_key]
    except Exception as e:
        raise ValueError(
            f"Key {tool_name_key=} not found in the generated tool call. Got keys: {list(tool_call_dictionary.keys())} instead"
        ) from e
    tool_arguments = tool_call_dictionary.get(tool_arguments_key, None)
    if isinstance(tool_arguments, str):
        tool_arguments = parse_json_if_needed(tool_arguments)
    return ChatMessageToolCall(
        id=str(uuid.uuid4()),
        type="function",
        function=ChatMessageToolCallDefinition(name=tool_name, arguments=tool_arguments),
    )


def supports_stop_parameter(model_id: str) -> bool:
    """
    判断模型是否接受 stop 参数（o3 / o4-mini 系列不接受）

    示例:
        >>> supports_stop_parameter("openai/gpt-4")
        True
        >>> supports_stop_parameter("o4-mini-2025-04-16")
        False
    """
    model_name = model_id.split("/")[-1]
    pattern = r"^(o3[-\d]*|o4-mini[-\d]*)$"
    return not re.match(pattern, model_name)


class Model:
    """
    模型基类

    子类需要实现 generate()，返回 ChatMessage。

    参数:
        flatten_messages_as_text (bool, 默认 False): 是否将消息扁平化为纯文本
        tool_name_key (str, 默认 "name"): 文本工具调用中工具名称的键
        tool_arguments_key (str, 默认 "arguments"): 文本工具调用中参数的键
        model_id (str, 可选): 模型标识
        **kwargs: 每次调用都会附带的默认补全参数（如 temperature）
    """

    def __init__(
        self,
        flatten_messages_as_text: bool = False,
        tool_name_key: str = "name",
        tool_arguments_key: str = "arguments",
        model_id: str | None = None,
        **kwargs,
    ):
        self.flatten_messages_as_text = flatten_messages_as_text
        self.tool_name_key = tool_name_key
        self.tool_arguments_key = tool_arguments_key
        self.kwargs = kwargs
        self.model_id: str | None = model_id

    def _prepare_completion_kwargs(
        self,
        messages: list[dict[str, str | list[dict]]],
        stop_sequences: list[str] | None = None,
        response_format: dict[str, str] | None = None,
        tools_to_call_from: list["Tool"] | None = None,
        custom_role_conversions: dict[str, str] | None = None,
        convert_images_to_image_urls: bool = False,
        tool_choice: str | dict | None = "required",
        **kwargs,
    ) -> dict[str, Any]:
        """
        组装一次补全请求的参数

        优先级（从高到低）：显式 kwargs > 方法参数 > self.kwargs
        """
        flatten_messages_as_text = kwargs.pop("flatten_messages_as_text", self.flatten_messages_as_text)
        messages = get_clean_message_list(
            messages,
            role_conversions=custom_role_conversions or tool_role_conversions,
            convert_images_to_image_urls=convert_images_to_image_urls,
            flatten_messages_as_text=flatten_messages_as_text,
        )
        completion_kwargs = {
            **self.kwargs,
            "messages": messages,
        }

        if stop_sequences is not None:
            if supports_stop_parameter(self.model_id or ""):
                completion_kwargs["stop"] = stop_sequences
        if response_format is not None:
            completion_kwargs["response_format"] = response_format

        if tools_to_call_from:
            tools_config = {
                "tools": [get_tool_json_schema(tool) for tool in tools_to_call_from],
            }
            if tool_choice is not None:
                tools_config["tool_choice"] = tool_choice
            completion_kwargs.update(tools_config)

        completion_kwargs.update(kwargs)
        return completion_kwargs

    def generate(
        self,
        messages: list[dict[str, str | list[dict]] | ChatMessage],
        stop_sequences: list[str] | None = None,
        response_format: dict[str, str] | None = None,
        tools_to_call_from: list["Tool"] | None = None,
        **kwargs,
    ) -> ChatMessage:
        """Process the input messages and return the model's response.

        Parameters:
            messages (`list[dict[str, str | list[dict]]] | list[ChatMessage]`):
                A list of message dictionaries to be processed. Each dictionary should have the structure `{"role": "user/system", "content": "message content"}`.
            stop_sequences (`List[str]`, *optional*):
                A list of strings that will stop the generation if encountered in the model's output.
            response_format (`dict[str, str]`, *optional*):
                The response format to use in the model's response.
            tools_to_call_from (`List[Tool]`, *optional*):
                A list of tools that the model can use to generate responses.
            **kwargs:
                Additional keyword arguments to be passed to the underlying model.

        Returns:
            `ChatMessage`: A chat message object containing the model's response.
        """
        raise NotImplementedError("This method must be implemented in child classes")

    def __call__(self, *args, **kwargs):
        return self.generate(*args, **kwargs)

    def parse_tool_calls(self, message: ChatMessage) -> ChatMessage:
        """Sometimes APIs do not return the tool call as a specific object, so we need to parse it."""
        message.role = MessageRole.ASSISTANT
        if not message.tool_calls:
            assert message.content is not None, "Message contains no content and no tool calls"
            message.tool_calls = [
                get_tool_call_from_text(message.content, self.tool_name_key, self.tool_arguments_key)
            ]
        assert len(message.tool_calls) > 0, "No tool call was found in the model output"
        for tool_call in message.tool_calls:
            tool_call.function.arguments = parse_json_if_needed(tool_call.function.arguments)
        return message

    def to_dict(self) -> dict:
        """
        导出模型配置，不包含 token / api_key 等敏感字段
        """
        model_dictionary = {
            **self.kwargs,
            "model_id": self.model_id,
        }
        for attribute in [
            "custom_role_conversions",
            "provider",
            "timeout",
            "api_base",
            "organization",
            "project",
        ]:
            if hasattr(self, attribute):
                model_dictionary[attribute] = getattr(self, attribute)

        dangerous_attributes = ["token", "api_key"]
        for attribute_name in dangerous_attributes:
            if hasattr(self, attribute_name):
                logger.warning(
                    "For security reasons, we do not export the `%s` attribute of your model. Please export it manually.",
                    attribute_name,
                )
        return model_dictionary

    @classmethod
    def from_dict(cls, model_dictionary: dict[str, Any]) -> "Model":
        return cls(**{k: v for k, v in model_dictionary.items()})


HEALTH_THRESHOLDS = {
    "healthy_latency_ms": 1000,
    "degraded_latency_ms": 5000,
    "timeout_ms": 10000,
}


@dataclass
class HealthStatus:
    """
    一次健康检查的结果

    属性:
        status (str): "healthy"、"degraded" 或 "unhealthy"
        latency_ms (int): 检查请求耗时（毫秒）
        error (str | None): 失败原因
        checked_at (float): 检查时间戳
        model_id (str | None): 被检查的模型
        details (dict): 额外信息，如可用模型数
    """

    status: Literal["healthy", "degraded", "unhealthy"]
    latency_ms: int
    error: str | None
    checked_at: float
    model_id: str | None
    details: dict = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    @property
    def degraded(self) -> bool:
        return self.status == "degraded"

    @property
    def unhealthy(self) -> bool:
        return self.status == "unhealthy"

    def dict(self):
        return asdict(self)


class ApiModel(Model):
    """
    远程 API 模型基类

    负责客户端创建与健康检查。子类实现 create_client()，
    如有需要可覆盖 _list_models() 以适配各自的服务。

    参数:
        model_id (str): 模型标识
        custom_role_conversions (dict[str, str], 可选): 角色转换映射
        client (Any, 可选): 预先配置好的客户端，缺省时调用 create_client()
        health_thresholds (dict, 可选): 覆盖 HEALTH_THRESHOLDS 中的阈值
        **kwargs: 传给 Model 的其他参数
    """

    def __init__(
        self,
        model_id: str,
        custom_role_conversions: dict[str, str] | None = None,
        client: Any | None = None,
        health_thresholds: dict[str, int] | None = None,
        **kwargs,
    ):
        super().__init__(model_id=model_id, **kwargs)
        self.custom_role_conversions = custom_role_conversions or {}
        self.client = client or self.create_client()
        self.health_thresholds = {**HEALTH_THRESHOLDS, **(health_thresholds or {})}
        self._last_health_check: HealthStatus | None = None

    def create_client(self):
        """Create the API client for the specific service."""
        raise NotImplementedError("Subclasses must implement this method to create a client")

    def _list_models(self) -> list[str]:
        """列出服务端可用的模型 id，默认使用 OpenAI 风格的 client.models.list()"""
        return [model.id for model in self.client.models.list()]

    def available_models(self) -> list[str]:
        return self._list_models()

    def health_check(self, cache_for: float | None = None) -> HealthStatus:
        """
        检查模型服务是否可用

        参数:
            cache_for (float, 可选): 若上一次检查距今不足该秒数，直接返回缓存结果

        返回:
            HealthStatus: 延迟低于 healthy 阈值为 healthy，低于 degraded 阈值为 degraded，
            超出阈值或请求失败为 unhealthy
        """
        if (
            cache_for is not None
            and self._last_health_check is not None
            and time.time() - self._last_health_check.checked_at < cache_for
        ):
            return self._last_health_check

        start_time = time.monotonic()
        try:
            models = self._list_models()
        except Exception as e:
            latency_ms = int((time.monotonic() - start_time) * 1000)
            logger.warning("Health check failed for %s: %s", self.model_id, e)
            status = HealthStatus(
                status="unhealthy",
                latency_ms=latency_ms,
                error=f"{type(e).__name__}: {e}",
                checked_at=time.time(),
                model_id=self.model_id,
            )
        else:
            latency_ms = int((time.monotonic() - start_time) * 1000)
            if latency_ms < self.health_thresholds["healthy_latency_ms"]:
                status_name = "healthy"
            elif latency_ms < self.health_thresholds["degraded_latency_ms"]:
                status_name = "degraded"
            else:
                status_name = "unhealthy"
            status = HealthStatus(
                status=status_name,
                latency_ms=latency_ms,
                error=None if status_name != "unhealthy" else "Latency above degraded threshold",
                checked_at=time.time(),
                model_id=self.model_id,
                details={"model_count": len(models), "models": models[:5]},
            )
        self._last_health_check = status
        return status

    def is_healthy(self, cache_for: float | None = None) -> bool:
        """Healthy or degraded both count as usable."""
        return not self.health_check(cache_for=cache_for).unhealthy

    def clear_health_cache(self):
        self._last_health_check = None


class InferenceClientModel(ApiModel):
    """A class to interact with Hugging Face's Inference Providers for language model interaction.

    Parameters:
        model_id (`str`, *optional*, default `"Qwen/Qwen2.5-Coder-32B-Instruct"`):
            The Hugging Face model ID to be used for inference.
        provider (`str`, *optional*):
            Name of the provider to use for inference. Defaults to "auto".
        token (`str`, *optional*):
            Token used by the Hugging Face API for authentication. If not provided, the class will try to use
            environment variable 'HF_TOKEN'.
        timeout (`int`, *optional*, defaults to 120):
            Timeout for the API request, in seconds.
        client_kwargs (`dict[str, Any]`, *optional*):
            Additional keyword arguments to pass to the Hugging Face InferenceClient.
        custom_role_conversions (`dict[str, str]`, *optional*):
            Custom role conversion mapping to convert message roles in others.
        api_key (`str`, *optional*):
            Alias of `token`. Cannot be used if `token` is set.
        base_url (`str`, `optional`):
            Base URL to run inference.
        **kwargs:
            Additional keyword arguments passed with every completion request.
    """

    def __init__(
        self,
        model_id: str = "Qwen/Qwen2.5-Coder-32B-Instruct",
        provider: str | None = None,
        token: str | None = None,
        timeout: int = 120,
        client_kwargs: dict[str, Any] | None = None,
        custom_role_conversions: dict[str, str] | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        **kwargs,
    ):
        if token is not None and api_key is not None:
            raise ValueError(
                "Received both `token` and `api_key` arguments. Please provide only one of them."
                " `api_key` is an alias for `token` to make the API compatible with OpenAI's client."
            )
        token = token if token is not None else api_key
        if token is None:
            token = os.getenv("HF_TOKEN")
        self.provider = provider
        self.timeout = timeout
        self.client_kwargs = {
            **(client_kwargs or {}),
            "model": model_id,
            "provider": provider,
            "token": token,
            "timeout": timeout,
            "base_url": base_url,
        }
        super().__init__(model_id=model_id, custom_role_conversions=custom_role_conversions, **kwargs)

    def create_client(self):
        from huggingface_hub import InferenceClient

        return InferenceClient(**self.client_kwargs)

    def _list_models(self) -> list[str]:
        from huggingface_hub import model_info

        info = model_info(self.model_id, token=self.client_kwargs["token"], timeout=self.timeout)
        return [info.id]

    def generate(
        self,
        messages: list[dict[str, str | list[dict]] | ChatMessage],
        stop_sequences: list[str] | None = None,
        response_format: dict[str, str] | None = None,
        tools_to_call_from: list["Tool"] | None = None,
        **kwargs,
    ) -> ChatMessage:
        completion_kwargs = self._prepare_completion_kwargs(
            messages=messages,
            stop_sequences=stop_sequences,
            response_format=response_format,
            tools_to_call_from=tools_to_call_from,
            convert_images_to_image_urls=True,
            custom_role_conversions=self.custom_role_conversions,
            **kwargs,
        )
        response = self.client.chat_completion(**completion_kwargs)
        return ChatMessage.from_dict(
            asdict(response.choices[0].message),
            raw=response,
            token_usage=TokenUsage(
                input_tokens=response.usage.prompt_tokens,
                output_tokens=response.usage.completion_tokens,
            ),
        )


class OpenAIServerModel(ApiModel):
    """This model connects to an OpenAI-compatible API server.

    Parameters:
        model_id (`str`):
            The model identifier to use on the server (e.g. "gpt-4o-mini").
        api_base (`str`, *optional*):
            The base URL of the OpenAI-compatible API server.
        api_key (`str`, *optional*):
            The API key to use for authentication.
        organization (`str`, *optional*):
            The organization to use for the API request.
        project (`str`, *optional*):
            The project to use for the API request.
        client_kwargs (`dict[str, Any]`, *optional*):
            Additional keyword arguments to pass to the OpenAI client (like organization, project, max_retries etc.).
        custom_role_conversions (`dict[str, str]`, *optional*):
            Custom role conversion mapping to convert message roles in others.
        flatten_messages_as_text (`bool`, default `False`):
            Whether to flatten messages as text.
        **kwargs:
            Additional keyword arguments to pass to the OpenAI API.
    """

    def __init__(
        self,
        model_id: str,
        api_base: str | None = None,
        api_key: str | None = None,
        organization: str | None = None,
        project: str | None = None,
        client_kwargs: dict[str, Any] | None = None,
        custom_role_conversions: dict[str, str] | None = None,
        flatten_messages_as_text: bool = False,
        **kwargs,
    ):
        self.api_base = api_base
        self.organization = organization
        self.project = project
        self.client_kwargs = {
            **(client_kwargs or {}),
            "api_key": api_key,
            "base_url": api_base,
            "organization": organization,
            "project": project,
        }
        super().__init__(
            model_id=model_id,
            custom_role_conversions=custom_role_conversions,
            flatten_messages_as_text=flatten_messages_as_text,
            **kwargs,
        )

    def create_client(self):
        try:
            import openai
        except ModuleNotFoundError as e:
            raise ModuleNotFoundError(
                "Please install 'openai' extra to use OpenAIServerModel: `pip install 'smolagents[openai]'`"
            ) from e

        return openai.OpenAI(**self.client_kwargs)

    def generate(
        self,
        messages: list[dict[str, str | list[dict]] | ChatMessage],
        stop_sequences: list[str] | None = None,
        response_format: dict[str, str] | None = None,
        tools_to_call_from: list["Tool"] | None = None,
        **kwargs,
    ) -> ChatMessage:
        completion_kwargs = self._prepare_completion_kwargs(
            messages=messages,
            stop_sequences=stop_sequences,
            response_format=response_format,
            tools_to_call_from=tools_to_call_from,
            model=self.model_id,
            custom_role_conversions=self.custom_role_conversions,
            convert_images_to_image_urls=True,
            **kwargs,
        )
        response = self.client.chat.completions.create(**completion_kwargs)
        message = ChatMessage.from_dict(
            response.choices[0].message.model_dump(include={"role", "content", "tool_calls"}),
            raw=response,
            token_usage=TokenUsage(
                input_tokens=response.usage.prompt_tokens,
                output_tokens=response.usage.completion_tokens,
            ),
        )
        if stop_sequences and message.content and not supports_stop_parameter(self.model_id):
            # 服务端没有截断，手动去掉结尾的停止序列
            message.content = remove_stop_sequences(message.content, stop_sequences)
        return message


__all__ = [
    "MessageRole",
    "tool_role_conversions",
    "get_clean_message_list",
    "Model",
    "ApiModel",
    "HealthStatus",
    "InferenceClientModel",
    "OpenAIServerModel",
    "ChatMessage",
]
