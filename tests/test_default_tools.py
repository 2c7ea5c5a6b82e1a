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
import socket
import unittest
from unittest.mock import MagicMock, patch

import pytest
import requests

from smolagents.default_tools import (
    TOOL_MAPPING,
    PythonInterpreterTool,
    UnsafeURLError,
    VisitWebpageTool,
    is_public_address,
    validate_public_url,
)

from .test_tools import ToolTesterMixin


HOSTS = {
    "example.com": "93.184.216.34",
    "www.example.com": "93.184.216.34",
    "intranet.example.com": "10.0.0.5",
    "localhost": "127.0.0.1",
    "ipv6.example.com": "::1",
}


def fake_getaddrinfo(host, port, *args, **kwargs):
    if host not in HOSTS:
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
    return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", (HOSTS[host], port or 0))]


def fake_response(text="", status_code=200, location=None):
    response = MagicMock(text=text, status_code=status_code)
    response.is_redirect = location is not None
    response.headers = {"location": location} if location else {}
    return response


@pytest.fixture
def resolver():
    with patch("smolagents.default_tools.socket.getaddrinfo", side_effect=fake_getaddrinfo) as mock_getaddrinfo:
        yield mock_getaddrinfo


class TestValidatePublicUrl:
    def test_public_url(self, resolver):
        assert validate_public_url("https://Example.com/page?q=1") == "example.com"

    @pytest.mark.parametrize(
        "url, error_message",
        [
            ("ftp://example.com/file", "Invalid URL scheme: ftp"),
            ("example.com", "Invalid URL scheme: none"),
            ("http:///path", "URL has no host"),
            ("http://169.254.169.254/latest/meta-data", "Blocked host: 169.254.169.254"),
            ("http://metadata.google.internal/", "Blocked host"),
            ("http://intranet.example.com/admin", "intranet.example.com resolves to 10.0.0.5"),
            ("http://localhost:8080/", "Private/internal IP addresses not allowed"),
            ("http://ipv6.example.com/", "resolves to ::1"),
            ("http://unknown.invalid/", "Could not resolve host unknown.invalid"),
        ],
    )
    def test_rejected_urls(self, resolver, url, error_message):
        with pytest.raises(UnsafeURLError, match=error_message):
            validate_public_url(url)

    @pytest.mark.parametrize(
        "address, expected",
        [
            ("8.8.8.8", True),
            ("192.168.1.1", False),
            ("172.16.0.1", False),
            ("169.254.1.1", False),
            ("0.0.0.0", False),
            ("224.0.0.1", False),
            ("2606:4700::1111", True),
            ("fe80::1", False),
        ],
    )
    def test_is_public_address(self, address, expected):
        assert is_public_address(address) is expected


class TestVisitWebpageTool(ToolTesterMixin):
    @pytest.fixture(autouse=True)
    def setup_tool(self, resolver):
        self.tool = VisitWebpageTool(max_output_length=1000, timeout=5)

    def test_converts_page_to_markdown(self):
        html = "<h1>Weather</h1>\n\n\n\n<p>Sunny <a href='/paris'>in Paris</a></p>"
        with patch("requests.get", return_value=fake_response(html)) as mock_get:
            result = self.tool({"url": "https://example.com/weather"})
        mock_get.assert_called_once_with("https://example.com/weather", timeout=5, allow_redirects=False)
        assert "Weather" in result
        assert "[in Paris](/paris)" in result
        assert "\n\n\n" not in result

    def test_output_is_truncated(self):
        with patch("requests.get", return_value=fake_response("<p>" + "word " * 1000 + "</p>")):
            result = self.tool("https://example.com/long")
        assert "..._This content has been truncated to stay below 1000 characters_...\n" in result

    def test_refuses_private_address(self):
        with patch("requests.get") as mock_get:
            result = self.tool("http://intranet.example.com/admin")
        assert result.startswith("Refusing to fetch the webpage: Private/internal IP addresses not allowed")
        mock_get.assert_not_called()

    def test_redirects_are_validated_at_every_hop(self):
        responses = [
            fake_response(status_code=301, location="https://www.example.com/moved"),
            fake_response(status_code=302, location="http://intranet.example.com/secrets"),
        ]
        with patch("requests.get", side_effect=responses) as mock_get:
            result = self.tool("https://example.com/start")
        assert "intranet.example.com resolves to 10.0.0.5" in result
        assert [call.args[0] for call in mock_get.call_args_list] == [
            "https://example.com/start",
            "https://www.example.com/moved",
        ]

    def test_relative_redirect(self):
        responses = [fake_response(status_code=302, location="/final"), fake_response("<p>Arrived</p>")]
        with patch("requests.get", side_effect=responses) as mock_get:
            result = self.tool("https://example.com/start")
        assert result == "Arrived"
        assert mock_get.call_args.args[0] == "https://example.com/final"

    def test_too_many_redirects(self):
        with patch("requests.get", return_value=fake_response(status_code=302, location="/loop")):
            result = self.tool("https://example.com/loop")
        assert result == "Error fetching the webpage: Exceeded 5 redirects."

    def test_timeout(self):
        with patch("requests.get", side_effect=requests.exceptions.Timeout()):
            result = self.tool("https://example.com/slow")
        assert result == "The request timed out. Please try again later or check the URL."

    def test_malformed_url_is_a_fetch_error(self):
        invalid_url = requests.exceptions.InvalidURL("Invalid URL 'https://example.com/%'")
        with patch("requests.get", side_effect=invalid_url):
            result = self.tool("https://example.com/%")
        assert result.startswith("Error fetching the webpage: Invalid URL")
        assert "Refusing" not in result

    def test_http_error(self):
        response = fake_response("Not found", status_code=404)
        response.raise_for_status.side_effect = requests.exceptions.HTTPError("404 Client Error: Not Found")
        with patch("requests.get", return_value=response):
            result = self.tool("https://example.com/missing")
        assert result == "Error fetching the webpage: 404 Client Error: Not Found"


class TestPythonInterpreterTool(ToolTesterMixin):
    def setup_method(self):
        self.tool = PythonInterpreterTool(authorized_imports=["numpy"])
        self.tool.setup()

    def test_exact_match_arg(self):
        result = self.tool("(2 / 2) * 4")
        assert result == "Stdout:\n\nOutput: 4.0"

    def test_exact_match_kwarg(self):
        result = self.tool(code="(2 / 2) * 4")
        assert result == "Stdout:\n\nOutput: 4.0"

    def test_prints_are_captured(self):
        result = self.tool("print('hello')\n3 + 4")
        assert result == "Stdout:\nhello\n\nOutput: 7"

    def test_description_lists_authorized_imports(self):
        assert "'numpy'" in self.tool.inputs["code"]["description"]
        assert "math" in self.tool.authorized_imports

    def test_unauthorized_imports_fail(self):
        result = self.tool("import sympy as sp")
        assert result.startswith("Error: Import of sympy is not allowed")

    def test_runtime_error_is_returned(self):
        result = self.tool("x = 1\ny = x / 0")
        assert result.startswith("Error: Code execution failed at line 'y = x / 0'")
        assert "ZeroDivisionError" in result

    def test_variables_do_not_persist_between_calls(self):
        self.tool("secret = 42")
        assert "NameError" in self.tool("secret")


class DefaultToolTests(unittest.TestCase):
    def test_tool_mapping(self):
        self.assertEqual(set(TOOL_MAPPING), {"python_interpreter", "visit_webpage"})
        self.assertIs(TOOL_MAPPING["visit_webpage"], VisitWebpageTool)
