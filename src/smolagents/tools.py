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
工具模块 - 代理可调用的工具抽象

自定义工具有两种写法：
- 继承 Tool，设置 name / description / inputs / output_type 并实现 forward()
- 用 @tool 装饰带类型提示和 Google 风格文档字符串的函数

作者: HuggingFace 团队
版本: 1.0
"""

import inspect
import textwrap
from collections.abc import Callable
from functools import wraps
from typing import Any

from ._function_type_hints_utils import TypeHintParsingException, get_json_schema
from .models import get_tool_json_schema
from .utils import is_valid_name


__all__ = ["AUTHORIZED_TYPES", "Tool", "tool"]


AUTHORIZED_TYPES = [
    "string",
    "boolean",
    "integer",
    "number",
    "image",
    "audio",
    "array",
    "object",
    "any",
    "null",
]

CONVERSION_DICT = {"str": "string", "int": "integer", "float": "number"}


def validate_after_init(cls):
    original_init = cls.__init__

    @wraps(original_init)
    def new_init(self, *args, **kwargs):
        original_init(self, *args, **kwargs)
        self.validate_arguments()

    cls.__init__ = new_init
    return cls


class Tool:
    """
    代理使用的工具基类

    子类需要设置以下类属性并实现 forward()：

    - **name** (`str`): 在提示中使用的工具名，必须是合法的 Python 标识符
    - **description** (`str`): 工具功能、输入与输出的简短描述
    - **inputs** (`dict[str, dict]`): 每个输入的 "type" 与 "description"，可选 "nullable"
    - **output_type** (`str`): 输出类型，取值见 AUTHORIZED_TYPES

    setup() 会在第一次调用前执行，适合放置耗时的初始化。
    """

    name: str
    description: str
    inputs: dict[str, dict[str, str | type | bool]]
    output_type: str

    def __init__(self, *args, **kwargs):
        self.is_initialized = False

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        validate_after_init(cls)

    def validate_arguments(self):
        required_attributes = {
            "description": str,
            "name": str,
            "inputs": dict,
            "output_type": str,
        }
        for attr, expected_type in required_attributes.items():
            attr_value = getattr(self, attr, None)
            if attr_value is None:
                raise TypeError(f"You must set an attribute {attr}.")
            if not isinstance(attr_value, expected_type):
                raise TypeError(
                    f"Attribute {attr} should have type {expected_type.__name__}, got {type(attr_value)} instead."
                )
        if not is_valid_name(self.name):
            raise Exception(
                f"Invalid Tool name '{self.name}': must be a valid Python identifier and not a reserved keyword"
            )
        for input_name, input_content in self.inputs.items():
            if not isinstance(input_content, dict):
                raise TypeError(f"Input '{input_name}' should be a dictionary.")
            if "type" not in input_content or "description" not in input_content:
                raise Exception(
                    f"Input '{input_name}' should have keys 'type' and 'description', has only {list(input_content.keys())}."
                )
            input_types = input_content["type"] if isinstance(input_content["type"], list) else [input_content["type"]]
            for input_type in input_types:
                if input_type not in AUTHORIZED_TYPES:
                    raise Exception(
                        f"Input '{input_name}': type '{input_type}' is not an authorized value, should be one of {AUTHORIZED_TYPES}."
                    )
        if self.output_type not in AUTHORIZED_TYPES:
            raise Exception(f"Output type '{self.output_type}' is not an authorized value, should be one of {AUTHORIZED_TYPES}.")

        signature = inspect.signature(self.forward)
        actual_keys = set(key for key in signature.parameters.keys() if key != "self")
        expected_keys = set(self.inputs.keys())
        if actual_keys != expected_keys:
            raise Exception(
                f"In tool '{self.name}', 'forward' method parameters were {actual_keys}, but expected {expected_keys}. "
                f"It should take 'self' as its first argument, then its next arguments should match the keys of tool attribute 'inputs'."
            )

    def forward(self, *args, **kwargs):
        raise NotImplementedError("Write this method in your subclass of `Tool`.")

    def __call__(self, *args, **kwargs):
        if not self.is_initialized:
            self.setup()
        # 工具调用型代理会把参数作为单个字典传入
        if len(args) == 1 and len(kwargs) == 0 and isinstance(args[0], dict):
            potential_kwargs = args[0]
            if all(key in self.inputs for key in potential_kwargs):
                args = ()
                kwargs = potential_kwargs
        return self.forward(*args, **kwargs)

    def setup(self):
        """
        在第一次调用前执行的初始化，例如加载大型资源
        """
        self.is_initialized = True

    def to_code_prompt(self) -> str:
        args_signature = ", ".join(f"{arg_name}: {arg_schema['type']}" for arg_name, arg_schema in self.inputs.items())
        tool_doc = self.description
        if self.inputs:
            args_descriptions = "\n".join(
                f"{arg_name}: {arg_schema['description']}" for arg_name, arg_schema in self.inputs.items()
            )
            tool_doc += "\n\nArgs:\n" + textwrap.indent(args_descriptions, "    ")
        tool_doc = f'"""{tool_doc}\n"""'
        return f"def {self.name}({args_signature}) -> {self.output_type}:\n{textwrap.indent(tool_doc, '    ')}"

    def to_tool_calling_prompt(self) -> str:
        return f"{self.name}: {self.description}\n    Takes inputs: {self.inputs}\n    Returns an output of type: {self.output_type}"

    def to_json_schema(self) -> dict:
        return get_tool_json_schema(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputs": self.inputs,
            "output_type": self.output_type,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


def tool(tool_function: Callable) -> Tool:
    """
    Converts a function into an instance of a dynamically created Tool subclass.

    Args:
        tool_function (`Callable`): Function to convert into a Tool subclass.
            Should have type hints for each input and a type hint for the output.
            Should also have a docstring including the description of the function
            and an 'Args:' part where each argument is described.
    """
    tool_json_schema = get_json_schema(tool_function)["function"]
    if "return" not in tool_json_schema:
        raise TypeHintParsingException("Tool return type not found: make sure your function has a return type hint!")

    class SimpleTool(Tool):
        def __init__(self):
            self.is_initialized = True

    SimpleTool.name = tool_json_schema["name"]
    SimpleTool.description = tool_json_schema["description"]
    SimpleTool.inputs = tool_json_schema["parameters"]["properties"]
    SimpleTool.output_type = tool_json_schema["return"]["type"]

    @wraps(tool_function)
    def forward(self, *args, **kwargs):
        return tool_function(*args, **kwargs)

    original_signature = inspect.signature(tool_function)
    forward.__signature__ = original_signature.replace(
        parameters=[inspect.Parameter("self", inspect.Parameter.POSITIONAL_ONLY)]
        + list(original_signature.parameters.values())
    )
    SimpleTool.forward = forward
    SimpleTool.__name__ = "".join(part.title() for part in tool_json_schema["name"].split("_"))
    return SimpleTool()
