# tools.py
# Demo tools, small and free of outside side effects.
# The loop resolves these through a ToolRegistry and never calls them directly.
# Each tool receives the canonical JSON text of its arguments and raises on
# failure; the dispatcher owns retries and error formatting.

import json
import threading
from typing import Any

from react_harness.dispatcher import Tool


def _args(input_text: str) -> dict[str, Any]:
    args = json.loads(input_text)
    if not isinstance(args, dict):
        raise ValueError("Arguments must be a JSON object")
    return args


def _number(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{name}' must be a number") from None


def _format_number(value: float) -> str:
    return str(int(value)) if value.is_integer() else str(value)


def _tool_echo(input_text: str) -> str:
    return str(_args(input_text).get("message", ""))


def _tool_calculator(input_text: str) -> str:
    args = _args(input_text)
    op = args.get("op") or args.get("operation")
    a = _number(args.get("a"), "a")
    b = _number(args.get("b"), "b")
    if op == "add":
        return _format_number(a + b)
    if op == "subtract":
        return _format_number(a - b)
    if op == "multiply":
        return _format_number(a * b)
    if op == "divide":
        if b == 0:
            raise ZeroDivisionError("Division by zero")
        return _format_number(a / b)
    raise ValueError(f"Invalid operation: {op}")


def _tool_summarize(input_text: str) -> str:
    text = str(_args(input_text).get("text", "")).strip()
    if not text:
        raise ValueError("no text provided")
    return text[:4000] if len(text) > 4000 else text


class KeyValueStore:
    """Process-local string store shared by every thread that holds the tool."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def __call__(self, input_text: str) -> str:
        args = _args(input_text)
        action = args.get("action")
        key = str(args.get("key", "")).strip()
        if action == "list":
            with self._lock:
                return json.dumps(sorted(self._data))
        if not key:
            raise ValueError("no key provided")
        with self._lock:
            if action == "set":
                self._data[key] = str(args.get("value", ""))
                return f"Stored '{key}'."
            if action == "get":
                if key not in self._data:
                    raise LookupError(f"Key '{key}' not found")
                return self._data[key]
            if action == "delete":
                existed = self._data.pop(key, None) is not None
                return f"Deleted '{key}'." if existed else f"Key '{key}' was not set."
        raise ValueError(f"Invalid action: {action}")


def default_tools() -> list[Tool]:
    """A fresh set of demo tools; each call gets its own key-value store."""
    return [
        Tool(
            name="echo",
            description='Repeat a message back. Args: {"message": "<string>"}',
            invoke=_tool_echo,
        ),
        Tool(
            name="calculator",
            description=(
                "Basic arithmetic. "
                'Args: {"op": "add|subtract|multiply|divide", "a": <number>, "b": <number>}'
            ),
            invoke=_tool_calculator,
        ),
        Tool(
            name="summarize",
            description='Truncate text to at most 4000 characters. Args: {"text": "<string>"}',
            invoke=_tool_summarize,
        ),
        Tool(
            name="key_value",
            description=(
                "Key-value store. "
                'Args: {"action": "set|get|delete|list", "key": "<string>", "value": "<string>"}'
            ),
            invoke=KeyValueStore(),
        ),
    ]
