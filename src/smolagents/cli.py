#!/usr/bin/env python
# coding=utf-8

# Copyright 2025 The HuggingFace Inc. team. All rights reserved.
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
命令行入口 - smolagent

示例:
    smolagent "巴黎今天的天气怎么样？" --model-type OpenAIServerModel --model-id gpt-4o \\
        --fallback-model-ids gpt-4o-mini --max-attempts 3 --agent-type tool_calling

作者: HuggingFace 团队
版本: 1.0
"""

import argparse
import os

from dotenv import load_dotenv

from smolagents import CodeAgent, InferenceClientModel, Model, OpenAIServerModel, ToolCallingAgent
from smolagents.default_tools import TOOL_MAPPING
from smolagents.monitoring import LogLevel
from smolagents.reliability import RetryPolicy


leopard_prompt = "How many seconds would it take for a leopard at full speed to run through Pont des Arts?"

AGENT_TYPES = {"code": CodeAgent, "tool_calling": ToolCallingAgent}


def parse_arguments(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Run a resilient agent with all specified parameters")
    parser.add_argument(
        "prompt",
        type=str,
        nargs="?",  # Makes it optional
        default=leopard_prompt,
        help="The prompt to run with the agent",
    )
    parser.add_argument(
        "--model-type",
        type=str,
        default="InferenceClientModel",
        help="The model type to use (e.g., InferenceClientModel, OpenAIServerModel)",
    )
    parser.add_argument(
        "--model-id",
        type=str,
        default="Qwen/Qwen2.5-Coder-32B-Instruct",
        help="The model ID to use for the specified model type",
    )
    parser.add_argument(
        "--agent-type",
        type=str,
        choices=sorted(AGENT_TYPES),
        default="code",
        help="The kind of agent to run",
    )
    parser.add_argument(
        "--imports",
        nargs="*",  # accepts zero or more arguments
        default=[],
        help="Space-separated list of imports to authorize (e.g., 'math statistics')",
    )
    parser.add_argument(
        "--tools",
        nargs="*",
        default=["visit_webpage"],
        help=f"Space-separated list of tools that the agent can use, among: {', '.join(TOOL_MAPPING)}",
    )
    parser.add_argument(
        "--max-steps",
        type=int,
        default=20,
        help="The maximum number of steps the agent can take",
    )
    parser.add_argument(
        "--verbosity-level",
        type=int,
        default=1,
        help="The verbosity level, as an int in [-1, 0, 1, 2].",
    )

    reliability_group = parser.add_argument_group("reliability options", "Retry, circuit breaker and fallback chain")
    reliability_group.add_argument(
        "--fallback-model-ids",
        nargs="*",
        default=[],
        help="Model IDs (same model type) tried in order when the main model keeps failing",
    )
    reliability_group.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help="Attempts per model before failing over to the next one",
    )
    reliability_group.add_argument(
        "--circuit-threshold",
        type=int,
        default=None,
        help="Consecutive failures that open a model's circuit breaker",
    )
    reliability_group.add_argument(
        "--circuit-cool-off",
        type=float,
        default=None,
        help="Seconds an open circuit waits before allowing a trial call",
    )

    group = parser.add_argument_group("api options", "Options for API-based model types")
    group.add_argument(
        "--provider",
        type=str,
        default=None,
        help="The inference provider to use for the model",
    )
    group.add_argument(
        "--api-base",
        type=str,
        help="The base URL for the model",
    )
    group.add_argument(
        "--api-key",
        type=str,
        help="The API key for the model",
    )
    return parser.parse_args(argv)


def load_model(
    model_type: str,
    model_id: str,
    api_base: str | None = None,
    api_key: str | None = None,
    provider: str | None = None,
) -> Model:
    """
    根据类型名创建模型

    异常:
        ValueError: 不支持的模型类型
    """
    if model_type == "OpenAIServerModel":
        return OpenAIServerModel(
            api_key=api_key or os.getenv("FIREWORKS_API_KEY") or os.getenv("OPENAI_API_KEY"),
            api_base=api_base or "https://api.fireworks.ai/inference/v1",
            model_id=model_id,
        )
    elif model_type == "InferenceClientModel":
        return InferenceClientModel(
            model_id=model_id,
            token=api_key or os.getenv("HF_TOKEN"),
            provider=provider,
        )
    else:
        raise ValueError(f"Unsupported model type: {model_type}")


def load_tools(tool_names: list[str]) -> list:
    available_tools = []
    for tool_name in tool_names:
        if tool_name not in TOOL_MAPPING:
            raise ValueError(
                f"Tool {tool_name} is not recognized as a default tool, should be one of: {', '.join(TOOL_MAPPING)}."
            )
        available_tools.append(TOOL_MAPPING[tool_name]())
    return available_tools


def build_agent(args) -> CodeAgent | ToolCallingAgent:
    model = load_model(args.model_type, args.model_id, api_base=args.api_base, api_key=args.api_key, provider=args.provider)
    fallback_models = [
        load_model(args.model_type, fallback_id, api_base=args.api_base, api_key=args.api_key, provider=args.provider)
        for fallback_id in args.fallback_model_ids
    ]
    agent_kwargs = {
        "tools": load_tools(args.tools),
        "model": model,
        "max_steps": args.max_steps,
        "verbosity_level": LogLevel(args.verbosity_level),
        "fallback_models": fallback_models or None,
        "retry_policy": RetryPolicy(max_attempts=args.max_attempts) if args.max_attempts is not None else None,
        "circuit_threshold": args.circuit_threshold,
        "circuit_cool_off": args.circuit_cool_off,
    }
    if args.agent_type == "code":
        agent_kwargs["additional_authorized_imports"] = args.imports
    return AGENT_TYPES[args.agent_type](**agent_kwargs)


def main(argv: list[str] | None = None) -> None:
    load_dotenv()

    args = parse_arguments(argv)
    agent = build_agent(args)

    print(f"Running agent with these tools: {args.tools}")
    result = agent.run(args.prompt)
    print(f"\nFinal answer: {result}")


if __name__ == "__main__":
    main()
