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
函数类型提示工具 - 从类型提示和 Google 风格文档字符串生成 JSON Schema

供 @tool 装饰器使用：参数类型来自类型提示，参数描述来自文档字符串的 Args: 部分。

作者: HuggingFace 团队
版本: 1.0
"""

import inspect
import json
import re
import types
from collections.abc import Callable
from typing import Any, Literal, Union, get_args, get_origin, get_type_hints

from PIL import Image


__all__ = ["get_json_schema", "DocstringParsingException", "TypeHintParsingException"]


class TypeHintParsingException(Exception):
    """Exception raised for errors in parsing type hints to generate JSON schemas"""


class DocstringParsingException(Exception):
    """Exception raised for errors in parsing docstrings to generate JSON schemas"""


# 描述部分：到第一个 Args:/Returns:/Raises: 行为止
description_re = re.compile(r"^(.*?)(?=\n\s*(?:Args:|Returns:|Raises:)|\Z)", re.DOTALL)
args_re = re.compile(r"\n\s*Args:\n\s*(.*?)[\n\s]*(?:Returns:|Raises:|\Z)", re.DOTALL)
# 每个参数一行，可带类型说明，如 "x (int): ..."
args_split_re = re.compile(
    r"(?:^|\n)\s*(\w+)(?:\s*\([^)]*?\))?:\s*(.*?)\s*(?=\n\s*\w+(?:\s*\([^)]*?\))?:|\Z)",
    re.DOTALL,
)
returns_re = re.compile(r"\n\s*Returns:\n\s*(?:[^)]*?:\s*)?(.*?)[\n\s]*(?:Raises:|\Z)", re.DOTALL)
choices_re = re.compile(r"\(choices:\s*(.*?)\)\s*$", re.IGNORECASE)

_BASE_TYPE_MAPPING = {
    int: {"type": "integer"},
    float: {"type": "number"},
    str: {"type": "string"},
    bool: {"type": "boolean"},
    list: {"type": "array"},
    dict: {"type": "object"},
    Any: {"type": "any"},
    types.NoneType: {"type": "null"},
    Image.Image: {"type": "image"},
}


def _parse_google_format_docstring(docstring: str) -> tuple[str | None, dict[str, str] | None, str | None]:
    """
    解析 Google 风格的文档字符串

    返回:
        (描述, {参数名: 参数描述}, 返回值描述)
    """
    description_match = description_re.search(docstring)
    args_match = args_re.search(docstring)
    returns_match = returns_re.search(docstring)

    description = description_match.group(1).strip() if description_match else None
    docstring_args = args_match.group(1).strip() if args_match else None
    returns = returns_match.group(1).strip() if returns_match else None

    if docstring_args is not None:
        docstring_args = "\n".join(line for line in docstring_args.split("\n") if line.strip())
        matches = args_split_re.findall(docstring_args)
        args_dict = {match[0]: re.sub(r"\s*\n+\s*", " ", match[1].strip()) for match in matches}
    else:
        args_dict = {}

    return description, args_dict, returns


def _get_json_schema_type(param_type: Any) -> dict[str, str]:
    if param_type in _BASE_TYPE_MAPPING:
        return dict(_BASE_TYPE_MAPPING[param_type])
    raise TypeHintParsingException(f"Couldn't parse this type hint, likely due to a custom class or object: {param_type}")


def _parse_type_hint(hint: Any) -> dict:
    origin = get_origin(hint)
    args = get_args(hint)

    if origin is None:
        return _get_json_schema_type(hint)

    if origin is Union or origin is types.UnionType:
        subtypes = [_parse_type_hint(arg) for arg in args if arg is not types.NoneType]
        if len(subtypes) == 1:
            return_dict = subtypes[0]
        elif all(isinstance(subtype.get("type"), str) and len(subtype) == 1 for subtype in subtypes):
            return_dict = {"type": sorted(subtype["type"] for subtype in subtypes)}
        else:
            return_dict = {"anyOf": subtypes}
        if types.NoneType in args:
            return_dict["nullable"] = True
        return return_dict

    if origin is Literal:
        return {"type": _get_json_schema_type(type(args[0]))["type"], "enum": list(args)}

    if origin is list:
        if not args:
            return {"type": "array"}
        return {"type": "array", "items": _parse_type_hint(args[0])}

    if origin is tuple:
        if not args:
            return {"type": "array"}
        if len(args) == 2 and args[1] is ...:
            return {"type": "array", "items": _parse_type_hint(args[0])}
        return {"type": "array", "prefixItems": [_parse_type_hint(arg) for arg in args]}

    if origin is dict:
        out = {"type": "object"}
        if len(args) == 2:
            out["additionalProperties"] = _parse_type_hint(args[1])
        return out

    raise TypeHintParsingException(f"Couldn't parse this type hint, likely due to a custom class or object: {hint}")


def _convert_type_hints_to_json_schema(func: Callable) -> dict:
    type_hints = get_type_hints(func)
    signature = inspect.signature(func)

    properties = {}
    for param_name, param_type in type_hints.items():
        properties[param_name] = _parse_type_hint(param_type)
    for param_name, param in signature.parameters.items():
        if param.annotation == inspect.Parameter.empty:
            raise TypeHintParsingException(f"Argument {param.name} is missing a type hint in function {func.__name__}")
        if param.default != inspect.Parameter.empty:
            properties[param_name]["nullable"] = True

    required = [name for name, param in signature.parameters.items() if param.default == inspect.Parameter.empty]
    schema = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def get_json_schema(func: Callable) -> dict:
    """
    根据函数的类型提示和文档字符串生成 JSON Schema

    参数:
        func (Callable): 带类型提示和 Google 风格文档字符串的函数

    返回:
        dict: {"type": "function", "function": {"name", "description", "parameters", "return"}}

    异常:
        DocstringParsingException: 缺少文档字符串，或某个参数没有描述
        TypeHintParsingException: 缺少或无法解析类型提示

    示例:
    ```python
    >>> def multiply(x: float, y: float) -> float:
    ...     '''
    ...     Multiplies two numbers.
    ...
    ...     Args:
    ...         x: The first number.
    ...         y: The second number.
    ...     '''
    ...     return x * y
    >>> get_json_schema(multiply)["function"]["parameters"]["required"]
    ['x', 'y']
    ```
    """
    doc = inspect.getdoc(func)
    if not doc:
        raise DocstringParsingException(
            f"Cannot generate JSON schema for {func.__name__} because it has no docstring!"
        )
    doc = doc.strip()
    main_doc, param_descriptions, return_doc = _parse_google_format_docstring(doc)

    json_schema = _convert_type_hints_to_json_schema(func)
    return_dict = json_schema["properties"].pop("return", None)
    if return_dict is not None:
        # 多类型的返回值统一视为 any
        if isinstance(return_dict.get("type"), list) or "anyOf" in return_dict:
            return_dict = {"type": "any"}
        if return_doc is not None:
            return_dict["description"] = return_doc

    for arg, schema in json_schema["properties"].items():
        if arg not in param_descriptions:
            raise DocstringParsingException(
                f"Cannot generate JSON schema for {func.__name__} because the docstring has no description for the argument '{arg}'"
            )
        desc = param_descriptions[arg]
        enum_choices = choices_re.search(desc)
        if enum_choices:
            schema["enum"] = [c.strip() for c in json.loads(enum_choices.group(1))]
            desc = desc[: enum_choices.start()].strip()
        schema["description"] = desc

    output = {"name": func.__name__, "description": main_doc, "parameters": json_schema}
    if return_dict is not None:
        output["return"] = return_dict
    return {"type": "function", "function": output}
