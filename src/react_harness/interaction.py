# interaction.py
# Human-in-the-loop suspension points: tool confirmation and tool feedback.
#
# Both waits are bounded by a timeout and honour the caller's cancel event,
# so they always terminate. Every failure to obtain an answer is fail-closed:
# no answer never counts as consent.

import json
import logging
import queue
import sys
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, TextIO

from react_harness import display
from react_harness.errors import ReactHarnessError, UserInputAborted, UserInputTimeout
from react_harness.models import (
    ConversationState,
    Message,
    Role,
    SafetyCheckResult,
    ToolExecutionResult,
)

logger = logging.getLogger(__name__)

ACCEPTANCE_TOKEN = "yes"
FEEDBACK_SENTINEL = "ERROR"
DEFAULT_TIMEOUT = 30.0


# ---------------------------------------------------------------------------
# Human input collaborators
# ---------------------------------------------------------------------------


class HumanInput(Protocol):
    def read_line(self, timeout: float, cancel: threading.Event | None = None) -> str:
        """
        Block until a line arrives.

        Raises UserInputTimeout after ``timeout`` seconds and UserInputAborted
        once ``cancel`` is set. A broken source raises OSError, EOFError or
        another ReactHarnessError; any of these counts as no answer.
        """
        ...


class ConsoleInput:
    """
    Reads answers from a text stream (stdin by default).

    A daemon thread owns the blocking readline; callers poll its queue so a
    wait can end on timeout or cancellation without leaving the stream in an
    inconsistent state. Lines typed before a prompt was shown are discarded,
    so a late answer to one prompt never answers the next. End of stream
    raises EOFError on every later read.
    """

    def __init__(self, stream: TextIO | None = None, poll_interval: float = 0.1) -> None:
        self._stream = stream if stream is not None else sys.stdin
        self._poll_interval = poll_interval
        self._lines: "queue.Queue[str | None]" = queue.Queue()
        self._reader: threading.Thread | None = None
        self._lock = threading.Lock()

    def _ensure_reader(self) -> None:
        with self._lock:
            if self._reader is None:
                self._reader = threading.Thread(target=self._pump, name="console-input", daemon=True)
                self._reader.start()

    def _pump(self) -> None:
        for line in iter(self._stream.readline, ""):
            self._lines.put(line.rstrip("\r\n"))
        self._lines.put(None)

    def _discard_pending(self) -> None:
        closed = False
        while True:
            try:
                line = self._lines.get_nowait()
            except queue.Empty:
                break
            if line is None:
                closed = True
            else:
                logger.info("Discarding answer typed before the prompt: %r", line)
        if closed:
            self._lines.put(None)

    def read_line(self, timeout: float, cancel: threading.Event | None = None) -> str:
        self._discard_pending()
        self._ensure_reader()
        deadline = time.monotonic() + timeout
        while True:
            if cancel is not None and cancel.is_set():
                raise UserInputAborted("User input aborted")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise UserInputTimeout(f"No input received within {timeout:g}s")
            try:
                line = self._lines.get(timeout=min(self._poll_interval, remaining))
            except queue.Empty:
                continue
            if line is None:
                # keep end-of-stream visible to later reads
                self._lines.put(None)
                raise EOFError("Input stream closed")
            return line


class ScriptedInput:
    """
    Replays a fixed list of answers; for headless runs and tests.

    An item that is an exception instance is raised instead of returned.
    Running out of answers behaves like a timeout.
    """

    def __init__(self, answers: Iterable["str | BaseException"] = ()) -> None:
        self._answers = list(answers)
        self._lock = threading.Lock()
        self.prompts_served = 0

    def read_line(self, timeout: float, cancel: threading.Event | None = None) -> str:
        if cancel is not None and cancel.is_set():
            raise UserInputAborted("User input aborted")
        with self._lock:
            self.prompts_served += 1
            if not self._answers:
                raise UserInputTimeout(f"No input received within {timeout:g}s")
            answer = self._answers.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        return answer


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class InputOutcome(str, Enum):
    ANSWERED = "answered"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    ERROR = "error"


@dataclass(frozen=True)
class Confirmation:
    state: ConversationState
    confirmed: bool
    outcome: InputOutcome


@dataclass(frozen=True)
class FeedbackResult:
    state: ConversationState
    feedback: str | None
    issue_reported: bool
    outcome: InputOutcome


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class InteractionCoordinator:
    """Appends the prompts to the conversation and waits for the human."""

    def __init__(
        self,
        human_input: HumanInput,
        timeout: float = DEFAULT_TIMEOUT,
        acceptance_token: str = ACCEPTANCE_TOKEN,
        feedback_sentinel: str = FEEDBACK_SENTINEL,
    ) -> None:
        self._input = human_input
        self._timeout = timeout
        self._acceptance_token = acceptance_token.lower()
        self.feedback_sentinel = feedback_sentinel

    def _wait(self, prompt: str, cancel: threading.Event | None) -> tuple[str | None, InputOutcome]:
        display.human_prompt(prompt)
        try:
            answer = self._input.read_line(self._timeout, cancel)
        except UserInputTimeout as exc:
            logger.warning("Timed out waiting for user input: %s", exc)
            return None, InputOutcome.TIMEOUT
        except UserInputAborted:
            logger.info("Wait for user input aborted")
            return None, InputOutcome.ABORTED
        except (OSError, EOFError, ReactHarnessError) as exc:
            logger.error("Error waiting for user input: %s", exc)
            return None, InputOutcome.ERROR
        return answer.strip(), InputOutcome.ANSWERED

    def request_confirmation(
        self,
        state: ConversationState,
        tool_name: str,
        args: dict,
        cancel: threading.Event | None = None,
    ) -> Confirmation:
        prompt = (
            f"Do you want to execute tool {tool_name} with args "
            f"{json.dumps(args, sort_keys=True, ensure_ascii=False)}? "
            f"({self._acceptance_token}/no)"
        )
        state = state.append(Message(role=Role.ASSISTANT, content=prompt))
        logger.info("Requesting confirmation for tool %s", tool_name)

        answer, outcome = self._wait(prompt, cancel)
        if answer is not None:
            state = state.append(Message(role=Role.USER, content=answer))

        confirmed = outcome is InputOutcome.ANSWERED and answer.lower() == self._acceptance_token
        verdict = "Tool execution confirmed" if confirmed else "Tool execution rejected"
        state = state.append(Message(role=Role.ASSISTANT, content=verdict))
        display.confirmation_result(tool_name, confirmed, outcome.value)
        return Confirmation(state=state, confirmed=confirmed, outcome=outcome)

    def request_feedback(
        self,
        state: ConversationState,
        tool_name: str,
        result: ToolExecutionResult,
        safety_result: SafetyCheckResult | None = None,
        cancel: threading.Event | None = None,
    ) -> FeedbackResult:
        if result.success:
            summary = f"Tool execution successful:\nTool: {tool_name}\nResult: {result.output}"
        else:
            summary = f"Tool execution failed:\nTool: {tool_name}\nError: {result.error}"
        messages = [Message(role=Role.ASSISTANT, content=summary)]
        if safety_result is not None and safety_result.warnings:
            warnings = "\n".join(safety_result.warnings)
            messages.append(Message(role=Role.ASSISTANT, content=f"Safety warnings:\n{warnings}"))
        prompt = (
            "Please provide feedback for tool execution "
            f'(or type "{self.feedback_sentinel}" to report an issue):'
        )
        messages.append(Message(role=Role.ASSISTANT, content=prompt))
        state = state.append(*messages)
        logger.info("Requesting feedback for tool %s", tool_name)

        answer, outcome = self._wait(prompt, cancel)
        if answer is None:
            return FeedbackResult(state=state, feedback=None, issue_reported=False, outcome=outcome)

        state = state.append(Message(role=Role.USER, content=answer))
        if answer == self.feedback_sentinel:
            logger.warning("User reported an issue with tool %s", tool_name)
            return FeedbackResult(state=state, feedback=None, issue_reported=True, outcome=outcome)
        return FeedbackResult(state=state, feedback=answer or None, issue_reported=False, outcome=outcome)
