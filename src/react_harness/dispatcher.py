# dispatcher.py
# Tool registry and the retrying executor.
#
# The controller resolves a Tool here, hands over the serialized arguments,
# and gets back a ToolExecutionResult plus a new ConversationState carrying
# the observation. Tool implementations never see the conversation.

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass

from react_harness import display
from react_harness.errors import ToolNotFoundError
from react_harness.models import (
    ConversationState,
    Message,
    ObservationAction,
    RetryPolicy,
    Role,
    ToolExecutionResult,
)
from react_harness.parser import XML_CODEC

logger = logging.getLogger(__name__)

ABORTED_MESSAGE = "Operation aborted"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Tool:
    """A named callable the model may invoke. ``invoke`` raises on failure."""

    name: str
    description: str
    invoke: Callable[[str], str]


class ToolRegistry:
    """
    Name -> Tool lookup shared by every conversation thread.

    Populate at startup, then call freeze(); after that the registry is
    read-only and lookups need no locking.
    """

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        self._frozen = False
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if self._frozen:
            raise RuntimeError("Tool registry is frozen.")
        if not tool.name:
            raise ValueError("Tool name must not be empty.")
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered.")
        self._tools[tool.name] = tool

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def require(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(f"Tool '{name}' not found")
        return tool

    def names(self) -> list[str]:
        return sorted(self._tools)

    def describe(self) -> str:
        return "\n".join(f"- {tool.name}: {tool.description}" for tool in self)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools[name] for name in self.names())

    def __len__(self) -> int:
        return len(self._tools)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InputValidation:
    ok: bool
    value: str = ""
    error: str | None = None


def validate_input(raw: str | None) -> InputValidation:
    """
    Trim and canonicalize tool input.

    Text that opens a JSON object or array is re-serialized with sorted keys
    and compact separators. Malformed JSON is reported, not raised, so the
    caller can still record an observation.
    """
    if raw is None or not raw.strip():
        return InputValidation(ok=False, error="Input is required")

    text = raw.strip()
    if not text.startswith(("{", "[")):
        return InputValidation(ok=True, value=text)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("Tool input is not valid JSON: %s", exc.msg)
        return InputValidation(ok=False, error=f"Malformed JSON input: {exc.msg}")
    return InputValidation(
        ok=True, value=json.dumps(parsed, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _aborted(attempts: int) -> ToolExecutionResult:
    return ToolExecutionResult(
        success=False,
        output=f"Error: {ABORTED_MESSAGE}",
        error=ABORTED_MESSAGE,
        aborted=True,
        attempts=attempts,
    )


def _backoff(delay: float, cancel: threading.Event | None) -> None:
    if delay <= 0:
        return
    if cancel is not None:
        # Returns early when the caller cancels mid-wait.
        cancel.wait(delay)
    else:
        time.sleep(delay)


def execute_with_retries(
    tool: Tool,
    input_text: str,
    cancel: threading.Event | None = None,
    retry: RetryPolicy | None = None,
) -> ToolExecutionResult:
    """
    Invoke ``tool`` at most ``retry.max_retries`` times.

    Between failed attempts the executor waits an exponentially growing delay
    (capped at ``retry.max_delay``). A set ``cancel`` event stops everything
    immediately and yields an *aborted* result rather than a plain failure.
    """
    retry = retry or RetryPolicy()
    delays = retry.delays()
    attempts = 0
    last_error = "Unknown error"

    for attempt in range(retry.max_retries):
        if cancel is not None and cancel.is_set():
            logger.info("Tool %s aborted before attempt %d", tool.name, attempt + 1)
            return _aborted(attempts)

        attempts += 1
        try:
            output = tool.invoke(input_text)
        except Exception as exc:
            if cancel is not None and cancel.is_set():
                return _aborted(attempts)
            last_error = str(exc) or exc.__class__.__name__
            logger.warning(
                "Tool %s failed (attempt %d/%d): %s", tool.name, attempts, retry.max_retries, last_error
            )
            display.tool_attempt_failed(tool.name, attempts, retry.max_retries, last_error)
            if attempt < len(delays):
                _backoff(delays[attempt], cancel)
            continue

        return ToolExecutionResult(
            success=True, output="" if output is None else str(output), attempts=attempts
        )

    return ToolExecutionResult(
        success=False, output=f"Error: {last_error}", error=last_error, attempts=attempts
    )


def handle_result(
    state: ConversationState, result: ToolExecutionResult, codec=XML_CODEC
) -> ConversationState:
    """Return a copy of ``state`` with the observation for ``result`` appended."""
    observation = result.output or "No output from tool"
    message = Message(role=Role.TOOL, content=codec.encode(ObservationAction(content=observation)))
    return state.model_copy(
        update={"messages": [*state.messages, message], "last_observation": observation}
    )


def execute_tool(
    state: ConversationState,
    tool: Tool,
    raw_input: str,
    cancel: threading.Event | None = None,
    retry: RetryPolicy | None = None,
    codec=XML_CODEC,
) -> tuple[ToolExecutionResult, ConversationState]:
    """Validate, execute and record one tool call."""
    validation = validate_input(raw_input)
    if not validation.ok:
        result = ToolExecutionResult(
            success=False,
            output=f"Input validation failed: {validation.error}",
            error=validation.error,
        )
    else:
        result = execute_with_retries(tool, validation.value, cancel=cancel, retry=retry)
    return result, handle_result(state, result, codec)
