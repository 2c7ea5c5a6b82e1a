import threading
import time

import pytest

from smolagents.tools import Tool, tool


class WeatherTool(Tool):
    name = "get_weather"
    description = "Returns the weather for a city"
    inputs = {
        "city": {"type": "string", "description": "Name of the city"},
        "celsius": {"type": "boolean", "description": "Whether to answer in Celsius", "nullable": True},
    }
    output_type = "string"

    def forward(self, city: str, celsius: bool = True) -> str:
        return f"Sunny in {city}, {22 if celsius else 72} degrees"


class SlowEchoTool(Tool):
    """Sleeps, then echoes its input; records how many calls ran at the same time."""

    name = "slow_echo"
    description = "Echoes the text after a short delay"
    inputs = {"text": {"type": "string", "description": "Text to echo"}}
    output_type = "string"

    def __init__(self, delay: float = 0.2):
        super().__init__()
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.threads = set()
        self._lock = threading.Lock()

    def forward(self, text: str) -> str:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.threads.add(threading.get_ident())
        time.sleep(self.delay)
        with self._lock:
            self.active -= 1
        return f"echo: {text}"


class BrokenTool(Tool):
    name = "broken_tool"
    description = "Always fails"
    inputs = {"query": {"type": "string", "description": "Anything"}}
    output_type = "string"

    def forward(self, query: str) -> str:
        raise RuntimeError(f"backend unavailable for {query}")


@pytest.fixture
def weather_tool():
    return WeatherTool()


@pytest.fixture
def slow_echo_tool():
    return SlowEchoTool()


@pytest.fixture
def broken_tool():
    return BrokenTool()


@pytest.fixture
def add_numbers_tool():
    @tool
    def add_numbers(a: int, b: int) -> int:
        """
        Adds two integers.

        Args:
            a: First number
            b: Second number
        """
        return a + b

    return add_numbers
