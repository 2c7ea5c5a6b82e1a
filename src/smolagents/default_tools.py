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
默认工具 - 代理开箱即用的工具集合

- FinalAnswerTool: 提交最终答案，所有代理都会自动添加
- PythonInterpreterTool: 在受限执行器中运行 Python 代码
- VisitWebpageTool: 抓取网页并转为 Markdown，拒绝访问内网地址

作者: HuggingFace 团队
版本: 1.0
"""

import ipaddress
import re
import socket
from urllib.parse import urljoin, urlparse

from .local_python_executor import LocalPythonExecutor
from .tools import Tool
from .utils import BASE_BUILTIN_MODULES, truncate_content


__all__ = ["FinalAnswerTool", "PythonInterpreterTool", "VisitWebpageTool", "TOOL_MAPPING"]


# 云服务元数据地址
BLOCKED_HOSTS = frozenset({"169.254.169.254", "metadata.google.internal", "metadata.goog"})
MAX_REDIRECTS = 5


class FinalAnswerTool(Tool):
    name = "final_answer"
    description = "Provides a final answer to the given problem."
    inputs = {"answer": {"type": "any", "description": "The final answer to the problem"}}
    output_type = "any"

    def forward(self, answer):
        return answer


class PythonInterpreterTool(Tool):
    name = "python_interpreter"
    description = "This is a tool that evaluates python code. It can be used to perform calculations."
    inputs = {
        "code": {
            "type": "string",
            "description": "The python code to run in interpreter",
        }
    }
    output_type = "string"

    def __init__(self, *args, authorized_imports=None, **kwargs):
        self.authorized_imports = sorted(set(BASE_BUILTIN_MODULES) | set(authorized_imports or []))
        self.inputs = {
            "code": {
                "type": "string",
                "description": (
                    "The code snippet to evaluate. All variables used in this snippet must be defined in this same snippet, "
                    f"else you will get an error. This code can only import the following python libraries: {self.authorized_imports}."
                ),
            }
        }
        super().__init__(*args, **kwargs)

    def forward(self, code: str) -> str:
        # 每次调用使用新的执行器，变量不会跨调用保留
        executor = LocalPythonExecutor(additional_authorized_imports=self.authorized_imports)
        executor.send_tools({})
        try:
            output, logs, _ = executor(code)
        except Exception as e:
            return f"Error: {str(e)}"
        return f"Stdout:\n{logs}\nOutput: {output}"


def is_public_address(address: str) -> bool:
    ip = ipaddress.ip_address(address)
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


class UnsafeURLError(ValueError):
    """The URL points somewhere the webpage tool must not fetch from."""


def validate_public_url(url: str) -> str:
    """
    检查 URL 只指向公网地址

    参数:
        url (str): 待访问的 URL

    返回:
        str: 主机名

    异常:
        UnsafeURLError: 协议不是 http/https、主机在黑名单中、无法解析，或解析到内网、回环、链路本地等地址
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise UnsafeURLError(f"Invalid URL scheme: {parsed.scheme or 'none'}")
    host = (parsed.hostname or "").lower()
    if not host:
        raise UnsafeURLError(f"URL has no host: {url}")
    if host in BLOCKED_HOSTS:
        raise UnsafeURLError(f"Blocked host: {host}")
    try:
        addresses = {info[4][0] for info in socket.getaddrinfo(host, parsed.port or None)}
    except socket.gaierror as e:
        raise UnsafeURLError(f"Could not resolve host {host}: {e}") from e
    for address in addresses:
        if not is_public_address(address.split("%")[0]):
            raise UnsafeURLError(f"Private/internal IP addresses not allowed: {host} resolves to {address}")
    return host


class VisitWebpageTool(Tool):
    name = "visit_webpage"
    description = (
        "Visits a webpage at the given url and reads its content as a markdown string. Use this to browse webpages."
    )
    inputs = {
        "url": {
            "type": "string",
            "description": "The url of the webpage to visit.",
        }
    }
    output_type = "string"

    def __init__(self, max_output_length: int = 40000, timeout: float = 20):
        super().__init__()
        self.max_output_length = max_output_length
        self.timeout = timeout

    def forward(self, url: str) -> str:
        try:
            import requests
            from markdownify import markdownify
            from requests.exceptions import RequestException
        except ImportError as e:
            raise ImportError(
                "You must install packages `markdownify` and `requests` to run this tool: for instance run `pip install markdownify requests`."
            ) from e
        try:
            response = self._fetch(requests, url)
            response.raise_for_status()
        except UnsafeURLError as e:
            return f"Refusing to fetch the webpage: {str(e)}"
        except requests.exceptions.Timeout:
            return "The request timed out. Please try again later or check the URL."
        except RequestException as e:
            return f"Error fetching the webpage: {str(e)}"
        markdown_content = markdownify(response.text).strip()
        markdown_content = re.sub(r"\n{3,}", "\n\n", markdown_content)
        return truncate_content(markdown_content, self.max_output_length)

    def _fetch(self, requests, url: str):
        # 手动跟随重定向，每一跳都重新检查地址
        for _ in range(MAX_REDIRECTS + 1):
            validate_public_url(url)
            response = requests.get(url, timeout=self.timeout, allow_redirects=False)
            if not response.is_redirect:
                return response
            url = urljoin(url, response.headers["location"])
        raise requests.exceptions.TooManyRedirects(f"Exceeded {MAX_REDIRECTS} redirects.")


TOOL_MAPPING = {
    tool_class.name: tool_class
    for tool_class in [
        PythonInterpreterTool,
        VisitWebpageTool,
    ]
}
