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
监控模块 - 令牌统计、计时与控制台日志

主要组件：
- TokenUsage: 单步或整次运行的令牌消耗
- Timing: 起止时间与持续时间
- Monitor: 作为步骤回调累计每步耗时与令牌
- AgentLogger: 基于 rich 的分级控制台输出
- LogLevel: 日志级别

作者: HuggingFace 团队
版本: 1.0
"""

import json
from dataclasses import dataclass, field
from enum import IntEnum

from rich import box
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from smolagents.utils import escape_code_brackets


__all__ = ["AgentLogger", "LogLevel", "Monitor", "TokenUsage", "Timing"]


@dataclass
class TokenUsage:
    """
    令牌消耗统计

    属性:
        input_tokens (int): 输入令牌数
        output_tokens (int): 输出令牌数
        total_tokens (int): 两者之和，自动计算
    """

    input_tokens: int
    output_tokens: int
    total_tokens: int = field(init=False)

    def __post_init__(self):
        self.total_tokens = self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    def dict(self):
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class Timing:
    """
    时间区间

    属性:
        start_time (float): 开始时间戳
        end_time (float | None): 结束时间戳，尚未结束时为 None
    """

    start_time: float
    end_time: float | None = None

    @property
    def duration(self):
        return None if self.end_time is None else self.end_time - self.start_time

    def dict(self):
        return {
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
        }

    def __repr__(self) -> str:
        return f"Timing(start_time={self.start_time}, end_time={self.end_time}, duration={self.duration})"


class Monitor:
    """
    运行监控器

    注册为代理的步骤回调，记录每个步骤的耗时并累计令牌消耗，
    同时统计出错的步骤数。

    参数:
        tracked_model: 被监控的模型
        logger (AgentLogger): 输出监控信息的日志记录器
    """

    def __init__(self, tracked_model, logger):
        self.step_durations = []
        self.tracked_model = tracked_model
        self.logger = logger
        self.total_input_token_count = 0
        self.total_output_token_count = 0
        self.error_count = 0

    def get_total_token_counts(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.total_input_token_count,
            output_tokens=self.total_output_token_count,
        )

    def reset(self):
        self.step_durations = []
        self.total_input_token_count = 0
        self.total_output_token_count = 0
        self.error_count = 0

    def update_metrics(self, step_log):
        """
        步骤结束后更新统计

        参数:
            step_log (MemoryStep): 刚完成的步骤，需带有 timing 与 token_usage
        """
        step_duration = step_log.timing.duration
        self.step_durations.append(step_duration)
        console_outputs = f"[Step {len(self.step_durations)}: Duration {step_duration:.2f} seconds"

        if step_log.token_usage is not None:
            self.total_input_token_count += step_log.token_usage.input_tokens
            self.total_output_token_count += step_log.token_usage.output_tokens
            console_outputs += (
                f"| Input tokens: {self.total_input_token_count:,} | Output tokens: {self.total_output_token_count:,}"
            )
        if getattr(step_log, "error", None) is not None:
            self.error_count += 1
        console_outputs += "]"
        self.logger.log(Text(console_outputs, style="dim"), level=1)


class LogLevel(IntEnum):
    OFF = -1  # 无输出
    ERROR = 0  # 仅错误
    INFO = 1  # 正常输出（默认）
    DEBUG = 2  # 详细输出


YELLOW_HEX = "#d4b702"


class AgentLogger:
    """
    代理控制台日志记录器

    所有输出都经过 log()，只有级别不高于 self.level 的消息才会打印。

    参数:
        level (LogLevel): 输出级别，默认 INFO
        console (Console | None): rich 控制台，测试中可传入写入 StringIO 的实例
    """

    def __init__(self, level: LogLevel = LogLevel.INFO, console: Console | None = None):
        self.level = level
        if console is None:
            self.console = Console()
        else:
            self.console = console

    def log(self, *args, level: int | str | LogLevel = LogLevel.INFO, **kwargs) -> None:
        """Logs a message to the console.

        Args:
            level (LogLevel, optional): Defaults to LogLevel.INFO.
        """
        if isinstance(level, str):
            level = LogLevel[level.upper()]
        if level <= self.level:
            self.console.print(*args, **kwargs)

    def log_error(self, error_message: str) -> None:
        self.log(escape_code_brackets(error_message), style="bold red", level=LogLevel.ERROR)

    def log_markdown(self, content: str, title: str | None = None, level=LogLevel.INFO, style=YELLOW_HEX) -> None:
        markdown_content = Syntax(
            content,
            lexer="markdown",
            theme="github-dark",
            word_wrap=True,
        )
        if title:
            self.log(
                Group(
                    Rule(
                        "[bold italic]" + title,
                        align="left",
                        style=style,
                    ),
                    markdown_content,
                ),
                level=level,
            )
        else:
            self.log(markdown_content, level=level)

    def log_code(self, title: str, content: str, level: int = LogLevel.INFO) -> None:
        self.log(
            Panel(
                Syntax(
                    content,
                    lexer="python",
                    theme="monokai",
                    word_wrap=True,
                ),
                title="[bold]" + title,
                title_align="left",
                box=box.HORIZONTALS,
            ),
            level=level,
        )

    def log_rule(self, title: str, level: int = LogLevel.INFO) -> None:
        self.log(
            Rule(
                "[bold]" + title,
                characters="━",
                style=YELLOW_HEX,
            ),
            level=level,
        )

    def log_task(self, content: str, subtitle: str, title: str | None = None, level: LogLevel = LogLevel.INFO) -> None:
        self.log(
            Panel(
                f"\n[bold]{escape_code_brackets(content)}\n",
                title="[bold]New run" + (f" - {title}" if title else ""),
                subtitle=subtitle,
                border_style=YELLOW_HEX,
                subtitle_align="left",
            ),
            level=level,
        )

    def log_messages(self, messages: list[dict], level: LogLevel = LogLevel.DEBUG) -> None:
        messages_as_string = "\n".join([json.dumps(dict(message), indent=4, default=str) for message in messages])
        self.log(
            Syntax(
                messages_as_string,
                lexer="markdown",
                theme="github-dark",
                word_wrap=True,
            ),
            level=level,
        )

    def visualize_agent_tree(self, agent):
        """
        以树形结构打印代理：模型、可靠性配置与工具表
        """
        table = Table(show_header=True, header_style="bold")
        table.add_column("Name", style="#1E90FF")
        table.add_column("Description")
        table.add_column("Arguments")
        for name, tool in agent.tools.items():
            args = [
                f"{arg_name} (`{info.get('type', 'Any')}`{', optional' if info.get('nullable') else ''}): {info.get('description', '')}"
                for arg_name, info in getattr(tool, "inputs", {}).items()
            ]
            table.add_row(name, getattr(tool, "description", str(tool)), "\n".join(args))

        name_headline = f"{agent.name} | " if agent.name else ""
        main_tree = Tree(f"[bold {YELLOW_HEX}]{name_headline}{agent.__class__.__name__} | {agent.model.model_id}")
        reliability_config = getattr(agent.model, "reliability_config", None)
        if reliability_config is not None:
            main_tree.add(f"🛡️ [italic #1E90FF]Reliability:[/italic #1E90FF] {reliability_config()}")
        if agent.__class__.__name__ == "CodeAgent":
            main_tree.add(f"✅ [italic #1E90FF]Authorized imports:[/italic #1E90FF] {agent.authorized_imports}")
        main_tree.add(Group("🛠️ [italic #1E90FF]Tools:[/italic #1E90FF]", table))
        self.console.print(main_tree)
