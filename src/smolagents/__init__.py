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
smolagents - 带可靠性层的轻量级智能代理框架

主要特性:
- 🤖 两种代理类型：CodeAgent 与 ToolCallingAgent，基于 ReAct 的推理-行动循环
- 🛡️ 模型调用的可靠性层：重试与退避、熔断器、令牌桶限流、模型回退链
- 📬 串行化模型请求的 RequestQueue，支持优先级与死信队列
- 📊 步骤与任务事件、令牌与时间预算、rich 日志

快速开始:
```python
from smolagents import CodeAgent, InferenceClientModel, OpenAIServerModel, RetryPolicy

agent = CodeAgent(
    tools=[],
    model=InferenceClientModel("Qwen/Qwen2.5-Coder-32B-Instruct"),
    fallback_models=[OpenAIServerModel("gpt-4o-mini")],
    retry_policy=RetryPolicy(max_attempts=3),
)
agent.on("task_complete", lambda event: print(event.outcome))
result = agent.run("计算 2 的 10 次方")
```

作者: HuggingFace 团队
版本: 1.0
许可证: Apache 2.0
"""

__version__ = "1.0.0"

from .agents import *  # noqa: I001
from .default_tools import *
from .evaluation import *
from .events import *
from .local_python_executor import *
from .memory import *
from .models import *
from .monitoring import *
from .reliability import *
from .request_queue import *
from .tools import *
from .utils import *
