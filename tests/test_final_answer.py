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


import PIL.Image
import pytest

from smolagents.default_tools import FinalAnswerTool
from smolagents.models import get_tool_json_schema

from .test_tools import ToolTesterMixin


class TestFinalAnswerTool(ToolTesterMixin):
    def setup_method(self):
        self.inputs = {"answer": "Final answer"}
        self.tool = FinalAnswerTool()

    def test_exact_match_arg(self):
        result = self.tool("Final answer")
        assert result == "Final answer"

    def test_exact_match_kwarg(self):
        result = self.tool(answer=self.inputs["answer"])
        assert result == "Final answer"

    @pytest.mark.parametrize(
        "answer",
        [
            42,
            {"city": "Paris", "temperature": 22},
            ["a", "b"],
            None,
            PIL.Image.new("RGB", (8, 8)),
        ],
    )
    def test_any_answer_is_returned_unchanged(self, answer):
        assert self.tool(answer=answer) is answer

    def test_json_schema_maps_any_to_string(self):
        schema = get_tool_json_schema(self.tool)
        assert schema["function"]["parameters"]["properties"]["answer"]["type"] == "string"
        assert schema["function"]["parameters"]["required"] == ["answer"]
        assert self.tool.inputs["answer"]["type"] == "any"
