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
本地 Python 执行器 - CodeAgent 代码动作的受限执行环境

执行分为两步：
1. 静态检查：解析代码的 AST，拒绝未授权的导入、双下划线属性访问和危险的内置函数
2. 受限执行：在只包含安全内置函数的命名空间中执行，捕获 print 输出，
   循环和函数调用受操作次数上限约束
   getattr / setattr 等内置函数在运行时同样拒绝双下划线属性，危险函数与未授权模块不会作为结果返回

代码中调用 final_answer(x) 会立即结束执行并把 x 标记为最终答案。
所有失败都以 InterpreterError 抛出，并附带已捕获的输出。

作者: HuggingFace 团队
版本: 1.0
"""

import ast
import builtins
import logging
import math
import re
import traceback
from collections.abc import Callable
from importlib import import_module
from types import BuiltinFunctionType, FunctionType, ModuleType
from typing import Any

from .utils import BASE_BUILTIN_MODULES, truncate_content


__all__ = ["LocalPythonExecutor", "InterpreterError", "FinalAnswerException", "fix_final_answer_code"]

logger = logging.getLogger(__name__)


class InterpreterError(ValueError):
    """
    An error raised when the interpreter cannot evaluate a Python expression, due to syntax error or unsupported
    operations. `logs` holds whatever the snippet printed before failing.
    """

    def __init__(self, message: str, logs: str = ""):
        super().__init__(message)
        self.logs = logs


class FinalAnswerException(BaseException):
    """Raised by `final_answer()` inside a snippet; a BaseException so snippet-level `except Exception` cannot swallow it."""

    def __init__(self, value):
        self.value = value


class _OperationBudgetExceeded(BaseException):
    pass


ERRORS = {
    name: getattr(builtins, name)
    for name in dir(builtins)
    if isinstance(getattr(builtins, name), type) and issubclass(getattr(builtins, name), Exception)
}

DEFAULT_MAX_LEN_OUTPUT = 50000
MAX_OPERATIONS = 10000000

CODE_FILENAME = "<code_action>"
LAST_OUTPUT_NAME = "__last_output__"
TICK_NAME = "__operation_tick__"

DANGEROUS_PATTERNS = (
    "_os",
    "os",
    "subprocess",
    "_subprocess",
    "pty",
    "system",
    "popen",
    "spawn",
    "shutil",
    "sys",
    "pathlib",
    "io",
    "socket",
    "compile",
    "eval",
    "exec",
    "multiprocessing",
)

FORBIDDEN_BUILTINS = frozenset(
    {"eval", "exec", "compile", "open", "__import__", "globals", "locals", "vars", "input", "breakpoint"}
)

# 允许访问的双下划线名称
ALLOWED_DUNDERS = frozenset({"__init__", "__name__", "__doc__"})

# 通向调用栈帧与全局命名空间的属性
FORBIDDEN_ATTRIBUTES = frozenset(
    {
        "gi_frame",
        "gi_code",
        "cr_frame",
        "cr_code",
        "ag_frame",
        "ag_code",
        "tb_frame",
        "tb_next",
        "f_back",
        "f_globals",
        "f_locals",
        "f_builtins",
        "f_code",
    }
)

DANGEROUS_FUNCTIONS = frozenset(
    {
        "builtins.compile",
        "builtins.eval",
        "builtins.exec",
        "builtins.globals",
        "builtins.locals",
        "builtins.vars",
        "builtins.open",
        "builtins.__import__",
        "builtins.breakpoint",
        "os.popen",
        "os.system",
        "posix.system",
        "nt.system",
    }
)

BASE_PYTHON_TOOLS = {
    "isinstance": isinstance,
    "issubclass": issubclass,
    "range": range,
    "float": float,
    "int": int,
    "bool": bool,
    "str": str,
    "bytes": bytes,
    "set": set,
    "frozenset": frozenset,
    "list": list,
    "dict": dict,
    "tuple": tuple,
    "object": object,
    "super": super,
    "property": property,
    "staticmethod": staticmethod,
    "classmethod": classmethod,
    "round": round,
    "ceil": math.ceil,
    "floor": math.floor,
    "log": math.log,
    "exp": math.exp,
    "sqrt": math.sqrt,
    "pow": pow,
    "len": len,
    "sum": sum,
    "max": max,
    "min": min,
    "abs": abs,
    "enumerate": enumerate,
    "zip": zip,
    "reversed": reversed,
    "sorted": sorted,
    "all": all,
    "any": any,
    "map": map,
    "filter": filter,
    "ord": ord,
    "chr": chr,
    "hex": hex,
    "bin": bin,
    "next": next,
    "iter": iter,
    "divmod": divmod,
    "callable": callable,
    "type": type,
    "complex": complex,
    "repr": repr,
    "hash": hash,
    "slice": slice,
    "format": format,
    "True": True,
    "False": False,
    "None": None,
}


class PrintContainer:
    def __init__(self):
        self.value = ""

    def append(self, text: str):
        self.value += text
        return self

    def __str__(self):
        return self.value

    def __len__(self):
        return len(self.value)


def fix_final_answer_code(code: str) -> str:
    """
    把对 final_answer 的变量赋值改名为 final_answer_variable，保留 final_answer() 调用

    模型有时会写 `final_answer = ...`，这会覆盖 final_answer 工具。
    代码中没有调用 final_answer() 时原样返回。
    """
    assignment_pattern = r"(?<!\.)(?<!\w)\bfinal_answer\s*="
    if "final_answer(" not in code or not re.search(assignment_pattern, code):
        return code

    code = re.sub(r"(?<!\.)(?<!\w)(\bfinal_answer)(\s*=)", r"final_answer_variable\2", code)
    # 其余非调用的引用同样改名
    code = re.sub(r"(?<!\.)(?<!\w)(\bfinal_answer\b)(?!\s*\()", "final_answer_variable", code)
    return code


def check_module_authorized(module_name: str, authorized_imports: list[str]) -> bool:
    if "*" in authorized_imports:
        return True
    module_path = module_name.split(".")
    if any(module in DANGEROUS_PATTERNS and module not in authorized_imports for module in module_path):
        return False
    # ["a", "b", "c"] -> ["a", "a.b", "a.b.c"]
    module_subpaths = [".".join(module_path[:i]) for i in range(1, len(module_path) + 1)]
    return any(subpath in authorized_imports for subpath in module_subpaths)


def get_safe_module(raw_module: Any, authorized_imports: list[str], visited: set[int] | None = None) -> Any:
    """Creates a copy of a module without its dangerous attributes; non-module objects are returned unchanged."""
    if not isinstance(raw_module, ModuleType):
        return raw_module
    if visited is None:
        visited = set()
    if id(raw_module) in visited:
        return raw_module
    visited.add(id(raw_module))

    safe_module = ModuleType(raw_module.__name__)
    for attr_name in dir(raw_module):
        if any(
            pattern in raw_module.__name__.split(".") + [attr_name] and pattern not in authorized_imports
            for pattern in DANGEROUS_PATTERNS
        ) and "*" not in authorized_imports:
            logger.debug("Skipping dangerous attribute %s.%s", raw_module.__name__, attr_name)
            continue
        try:
            attr_value = getattr(raw_module, attr_name)
        except ImportError as e:
            logger.debug("Skipping %s.%s: %s", raw_module.__name__, attr_name, e)
            continue
        if isinstance(attr_value, ModuleType):
            attr_value = get_safe_module(attr_value, authorized_imports, visited=visited)
        setattr(safe_module, attr_name, attr_value)
    return safe_module


def _is_dunder(name: str) -> bool:
    return name.startswith("__") and name.endswith("__") and name not in ALLOWED_DUNDERS


def check_attribute_allowed(name: Any):
    if not isinstance(name, str):
        raise InterpreterError(f"Attribute name must be a string, got {type(name).__name__}")
    if _is_dunder(name):
        raise InterpreterError(f"Forbidden access to dunder attribute: {name}")
    if name in FORBIDDEN_ATTRIBUTES:
        raise InterpreterError(f"Forbidden access to attribute: {name}")


def check_safer_result(result: Any, static_tools: dict[str, Callable], authorized_imports: list[str]):
    """
    拒绝危险的求值结果：未授权的模块，以及危险模块中的函数（除非它本身就是提供的工具）

    异常:
        InterpreterError: 结果不安全
    """
    if isinstance(result, ModuleType):
        if not check_module_authorized(result.__name__, authorized_imports):
            raise InterpreterError(f"Forbidden access to module: {result.__name__}")
    elif isinstance(result, (FunctionType, BuiltinFunctionType)):
        qualified_name = f"{getattr(result, '__module__', None)}.{getattr(result, '__name__', None)}"
        if qualified_name in DANGEROUS_FUNCTIONS and not any(result is tool for tool in static_tools.values()):
            raise InterpreterError(f"Forbidden access to function: {qualified_name}")


class CodeValidator(ast.NodeVisitor):
    """
    静态检查代码动作，发现第一个违规即抛出 InterpreterError

    参数:
        authorized_imports (list[str]): 允许导入的模块
        protected_names (set[str]): 不允许被赋值覆盖的名称（工具名）
    """

    def __init__(self, authorized_imports: list[str], protected_names: set[str]):
        self.authorized_imports = authorized_imports
        self.protected_names = protected_names

    def visit_Import(self, node: ast.Import):
        for alias in node.names:
            if not check_module_authorized(alias.name, self.authorized_imports):
                raise InterpreterError(
                    f"Import of {alias.name} is not allowed. Authorized imports are: {str(self.authorized_imports)}"
                )
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom):
        if node.level or not node.module or not check_module_authorized(node.module, self.authorized_imports):
            raise InterpreterError(
                f"Import from {node.module} is not allowed. Authorized imports are: {str(self.authorized_imports)}"
            )
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute):
        check_attribute_allowed(node.attr)
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name):
        if node.id in FORBIDDEN_BUILTINS or _is_dunder(node.id):
            raise InterpreterError(
                f"Forbidden function evaluation: '{node.id}' is not among the explicitly allowed tools or defined/imported in the preceding code"
            )
        if isinstance(node.ctx, ast.Store) and node.id in self.protected_names:
            raise InterpreterError(f"Cannot assign to name '{node.id}': doing this would erase the existing tool!")
        self.generic_visit(node)


class OperationBudget(ast.NodeTransformer):
    """Inserts a budget check at the top of every loop body and function body."""

    def _tick(self, node: ast.AST) -> ast.stmt:
        call = ast.Expr(value=ast.Call(func=ast.Name(id=TICK_NAME, ctx=ast.Load()), args=[], keywords=[]))
        return ast.copy_location(call, node)

    def _instrument(self, node):
        self.generic_visit(node)
        node.body.insert(0, self._tick(node))
        return node

    visit_For = _instrument
    visit_AsyncFor = _instrument
    visit_While = _instrument
    visit_FunctionDef = _instrument
    visit_AsyncFunctionDef = _instrument


def _capture_last_expression(tree: ast.Module) -> ast.Module:
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last = tree.body[-1]
        tree.body[-1] = ast.copy_location(
            ast.Assign(targets=[ast.Name(id=LAST_OUTPUT_NAME, ctx=ast.Store())], value=last.value), last
        )
    return tree


class LocalPythonExecutor:
    """
    在本地进程中受限地执行代码动作

    变量在多次调用之间保留在 self.state 中，因此后一步代码可以使用前一步定义的变量。

    参数:
        additional_authorized_imports (list[str]): 在 BASE_BUILTIN_MODULES 之外允许导入的模块，"*" 表示全部
        max_print_outputs_length (int, 可选): 捕获输出的最大长度
        max_operations (int, 默认 MAX_OPERATIONS): 循环迭代与函数调用的总次数上限
    """

    def __init__(
        self,
        additional_authorized_imports: list[str] | None = None,
        max_print_outputs_length: int | None = None,
        max_operations: int = MAX_OPERATIONS,
    ):
        self.additional_authorized_imports = list(additional_authorized_imports or [])
        self.authorized_imports = sorted(set(BASE_BUILTIN_MODULES) | set(self.additional_authorized_imports))
        self.max_print_outputs_length = (
            max_print_outputs_length if max_print_outputs_length is not None else DEFAULT_MAX_LEN_OUTPUT
        )
        self.max_operations = max_operations
        self.state: dict[str, Any] = {}
        self.static_tools: dict[str, Callable] = {}

    def send_variables(self, variables: dict[str, Any]):
        self.state.update(variables)

    def send_tools(self, tools: dict[str, Callable]):
        self.static_tools = dict(tools)
        # final_answer 先执行工具本身，再结束代码片段
        final_answer_tool = self.static_tools.get("final_answer")

        def final_answer(*args, **kwargs):
            value = final_answer_tool(*args, **kwargs) if final_answer_tool is not None else args[0]
            raise FinalAnswerException(value)

        self.static_tools["final_answer"] = final_answer

    def _guarded_import(self, name, globals=None, locals=None, fromlist=(), level=0):
        if level != 0 or not check_module_authorized(name, self.authorized_imports):
            raise InterpreterError(f"Import of {name} is not allowed. Authorized imports are: {str(self.authorized_imports)}")
        module = import_module(name)
        if fromlist:
            return get_safe_module(module, self.authorized_imports)
        return get_safe_module(import_module(name.split(".")[0]), self.authorized_imports)

    def _build_builtins(self, print_outputs: PrintContainer) -> dict[str, Any]:
        operations = 0

        def tick():
            nonlocal operations
            operations += 1
            if operations > self.max_operations:
                raise _OperationBudgetExceeded()

        def captured_print(*args, sep=" ", end="\n", **kwargs):
            print_outputs.append(sep.join(str(arg) for arg in args) + end)

        # 字符串形式的属性名绕过了静态检查，这里在运行时再检查一次
        def safe_getattr(obj, name, *default):
            check_attribute_allowed(name)
            value = getattr(obj, name, *default)
            check_safer_result(value, self.static_tools, self.authorized_imports)
            return value

        def safe_hasattr(obj, name):
            check_attribute_allowed(name)
            return hasattr(obj, name)

        def safe_setattr(obj, name, value):
            check_attribute_allowed(name)
            setattr(obj, name, value)

        def safe_delattr(obj, name):
            check_attribute_allowed(name)
            delattr(obj, name)

        return {
            **ERRORS,
            **BASE_PYTHON_TOOLS,
            "print": captured_print,
            "getattr": safe_getattr,
            "hasattr": safe_hasattr,
            "setattr": safe_setattr,
            "delattr": safe_delattr,
            "__import__": self._guarded_import,
            "__build_class__": builtins.__build_class__,
            TICK_NAME: tick,
        }

    def __call__(self, code_action: str) -> tuple[Any, str, bool]:
        """
        执行一段代码

        返回:
            (output, logs, is_final_answer): 最终答案或最后一个表达式的值、捕获的输出、是否调用了 final_answer

        异常:
            InterpreterError: 语法错误、静态检查失败、超出操作上限或运行时异常
        """
        try:
            tree = ast.parse(code_action)
        except SyntaxError as e:
            raise InterpreterError(
                f"Code parsing failed on line {e.lineno} due to: {type(e).__name__}\n"
                f"{e.text}"
                f"{' ' * (e.offset or 0)}^\n"
                f"Error: {str(e)}"
            )
        CodeValidator(self.authorized_imports, set(self.static_tools)).visit(tree)
        tree = ast.fix_missing_locations(_capture_last_expression(OperationBudget().visit(tree)))
        compiled = compile(tree, CODE_FILENAME, "exec")

        print_outputs = PrintContainer()
        self.state["_print_outputs"] = print_outputs
        self.state["__name__"] = "__main__"
        self.state["__builtins__"] = self._build_builtins(print_outputs)
        self.state.update(self.static_tools)
        self.state.pop(LAST_OUTPUT_NAME, None)

        def logs() -> str:
            return truncate_content(str(print_outputs), max_length=self.max_print_outputs_length)

        try:
            exec(compiled, self.state)
        except FinalAnswerException as e:
            check_safer_result(e.value, self.static_tools, self.authorized_imports)
            return e.value, logs(), True
        except _OperationBudgetExceeded:
            raise InterpreterError(
                f"Reached the max number of operations of {self.max_operations}. Maybe there is an infinite loop "
                "somewhere in the code, or you're just asking too many calculations.",
                logs=logs(),
            ) from None
        except InterpreterError as e:
            e.logs = logs()
            raise
        except Exception as e:
            raise InterpreterError(
                f"Code execution failed at line '{self._failing_line(code_action, e)}' due to: {type(e).__name__}: {e}",
                logs=logs(),
            ) from e
        output = self.state.pop(LAST_OUTPUT_NAME, None)
        check_safer_result(output, self.static_tools, self.authorized_imports)
        return output, logs(), False

    @staticmethod
    def _failing_line(code: str, error: Exception) -> str:
        frames = [frame for frame in traceback.extract_tb(error.__traceback__) if frame.filename == CODE_FILENAME]
        if not frames or frames[-1].lineno is None:
            return code.strip().splitlines()[-1] if code.strip() else ""
        return code.splitlines()[frames[-1].lineno - 1].strip()
