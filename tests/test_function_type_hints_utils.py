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
from typing import Any, Literal

import pytest
from PIL import Image

from smolagents._function_type_hints_utils import (
    DocstringParsingException,
    TypeHintParsingException,
    get_json_schema,
)


@pytest.fixture
def valid_func():
    """A well-formed function with docstring, type hints, and return block."""

    def multiply(x: int, y: float) -> float:
        """
        Multiplies two numbers.

        Args:
            x: The first number.
            y: The second number.
        Returns:
            Product of x and y.
        """
        return x * y

    return multiply


@pytest.fixture
def no_docstring_func():
    def sample(x: int):
        return x

    return sample


@pytest.fixture
def missing_arg_doc_func():
    def add(x: int, y: int):
        """
        Adds two numbers.

        Args:
            x: The first number.
        """
        return x + y

    return add


@pytest.fixture
def optional_types_func():
    def process_with_optional(required_arg: str, optional_arg: int | None = None) -> str:
        """
        Process with optional argument.

        Args:
            required_arg: A required string argument.
            optional_arg: An optional integer argument.

        Returns:
            Processing result.
        """
        return "processed"

    return process_with_optional


@pytest.fixture
def typed_docstring_func():
    def calculate(x: int, y: float) -> float:
        """
        Calculate something.

        Args:
            x (int): An integer parameter with type in docstring.
            y (float): A float parameter with type in docstring.

        Returns:
            float: The calculated result.
        """
        return x * y

    return calculate


@pytest.fixture
def keywords_in_description_func():
    def process(value: str) -> str:
        """
        Function with Args: or Returns: keywords in its description.

        Args:
            value: A string value.

        Returns:
            str: Processed value.
        """
        return value.upper()

    return process


class TestGetJsonSchema:
    def test_get_json_schema_example(self):
        def fn(x: int, y: tuple[str, str, float] | None = None) -> None:
            """
            Test function
            Args:
                x: The first input
                y: The second input
            """
            pass

        schema = get_json_schema(fn)
        expected_schema = {
            "name": "fn",
            "description": "Test function",
            "parameters": {
                "type": "object",
                "properties": {
                    "x": {"type": "integer", "description": "The first input"},
                    "y": {
                        "type": "array",
                        "description": "The second input",
                        "nullable": True,
                        "prefixItems": [{"type": "string"}, {"type": "string"}, {"type": "number"}],
                    },
                },
                "required": ["x"],
            },
            "return": {"type": "null"},
        }
        assert schema["type"] == "function"
        assert schema["function"] == expected_schema

    def test_basic_structure(self, valid_func):
        function_schema = get_json_schema(valid_func)["function"]
        assert function_schema["name"] == "multiply"
        assert function_schema["description"] == "Multiplies two numbers."
        assert function_schema["parameters"]["required"] == ["x", "y"]
        assert function_schema["parameters"]["properties"]["x"] == {"type": "integer", "description": "The first number."}
        assert function_schema["return"] == {"type": "number", "description": "Product of x and y."}

    @pytest.mark.parametrize("fixture_name", ["no_docstring_func", "missing_arg_doc_func"])
    def test_docstring_errors(self, request, fixture_name):
        func = request.getfixturevalue(fixture_name)
        with pytest.raises(DocstringParsingException):
            get_json_schema(func)

    def test_missing_arg_description_message(self, missing_arg_doc_func):
        with pytest.raises(DocstringParsingException, match="no description for the argument 'y'"):
            get_json_schema(missing_arg_doc_func)

    def test_optional_arguments_are_nullable_and_not_required(self, optional_types_func):
        parameters = get_json_schema(optional_types_func)["function"]["parameters"]
        assert parameters["required"] == ["required_arg"]
        assert parameters["properties"]["optional_arg"]["nullable"] is True
        assert parameters["properties"]["optional_arg"]["type"] == "integer"
        assert "nullable" not in parameters["properties"]["required_arg"]

    def test_default_value_makes_argument_nullable(self):
        def get_weather(location: str, celsius: bool = False) -> str:
            """
            Get weather.

            Args:
                location: The location.
                celsius: Whether to use celsius.
            """
            return location

        properties = get_json_schema(get_weather)["function"]["parameters"]["properties"]
        assert properties["celsius"] == {"type": "boolean", "nullable": True, "description": "Whether to use celsius."}

    def test_types_in_docstring_are_stripped(self, typed_docstring_func):
        function_schema = get_json_schema(typed_docstring_func)["function"]
        properties = function_schema["parameters"]["properties"]
        assert properties["x"]["description"] == "An integer parameter with type in docstring."
        assert properties["y"]["description"] == "A float parameter with type in docstring."
        assert function_schema["return"]["description"] == "The calculated result."

    def test_keywords_inside_description(self, keywords_in_description_func):
        function_schema = get_json_schema(keywords_in_description_func)["function"]
        assert function_schema["description"] == "Function with Args: or Returns: keywords in its description."
        assert function_schema["parameters"]["properties"]["value"]["description"] == "A string value."

    def test_multiline_argument_description(self):
        def search(query: str) -> str:
            """
            Search the web.

            Args:
                query: The query to run,
                    written in plain words.
            """
            return query

        properties = get_json_schema(search)["function"]["parameters"]["properties"]
        assert properties["query"]["description"] == "The query to run, written in plain words."

    def test_enum_choices(self):
        def select_color(color: str) -> str:
            """
            Select a color.

            Args:
                color: The color to select (choices: ["red", "green", "blue"])
            """
            return color

        color_schema = get_json_schema(select_color)["function"]["parameters"]["properties"]["color"]
        assert color_schema == {"type": "string", "enum": ["red", "green", "blue"], "description": "The color to select"}

    @pytest.mark.parametrize(
        "hint, expected",
        [
            (list[str], {"type": "array", "items": {"type": "string"}}),
            (tuple[int, ...], {"type": "array", "items": {"type": "integer"}}),
            (dict[str, float], {"type": "object", "additionalProperties": {"type": "number"}}),
            (
                list[dict[str, Any]],
                {"type": "array", "items": {"type": "object", "additionalProperties": {"type": "any"}}},
            ),
            (int | str, {"type": ["integer", "string"]}),
            (Literal["fast", "slow"], {"type": "string", "enum": ["fast", "slow"]}),
            (Image.Image, {"type": "image"}),
            (Any, {"type": "any"}),
        ],
    )
    def test_type_hints(self, hint, expected):
        def fn(value):
            """
            Test function

            Args:
                value: The value
            """
            pass

        fn.__annotations__ = {"value": hint, "return": str}
        value_schema = get_json_schema(fn)["function"]["parameters"]["properties"]["value"]
        assert value_schema == {**expected, "description": "The value"}

    def test_union_return_type_becomes_any(self):
        def process_union(value: int | str) -> bool | str:
            """
            Process a value.

            Args:
                value: An integer or string value.

            Returns:
                Processing result.
            """
            return True

        assert get_json_schema(process_union)["function"]["return"] == {"type": "any", "description": "Processing result."}

    def test_missing_type_hint(self):
        def fn(x) -> str:
            """
            Test function

            Args:
                x: The input
            """
            return x

        with pytest.raises(TypeHintParsingException, match="missing a type hint"):
            get_json_schema(fn)

    def test_custom_class_hint(self):
        class Custom:
            pass

        def fn(x: Custom) -> str:
            """
            Test function

            Args:
                x: The input
            """
            return ""

        with pytest.raises(TypeHintParsingException, match="custom class"):
            get_json_schema(fn)
