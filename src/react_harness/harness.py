# harness.py
# ReACT Loop Controller
#
# The AgentLoop is the kernel. The model is a passive responder; this class
# owns all control flow, routing, state and gating. The model never invokes a
# tool directly; it proposes one and the loop decides.
#
# Control flow, per step:
#   model → parse → (tool? → registry → safety gate → confirmation
#   → retrying dispatch → feedback) → continue or end
#
# Memory is consulted once before the first step and written once after the
# last. All terminal output is delegated to display.py.

import json
import logging
import os
import threading
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

from openai import OpenAI

from react_harness import display
from react_harness.channel import MessageChannel, Subscriber
from react_harness.dispatcher import ToolRegistry, execute_tool
from react_harness.errors import (
    ErrorKind,
    ParseError,
    ReactHarnessError,
    SafetyViolation,
    ToolExecutionError,
    ToolNotFoundError,
    UserInputAborted,
    UserInputTimeout,
    UserRejected,
)
from react_harness.interaction import InputOutcome, InteractionCoordinator
from react_harness.memory import KeyLocks, MemoryStore
from react_harness.models import (
    ChatAction,
    ComposeAction,
    ConversationState,
    EditAction,
    ErrorAction,
    FeedbackAction,
    FinalAction,
    LoopError,
    Message,
    ObservationAction,
    RetryPolicy,
    Role,
    SafetyPolicy,
    Status,
    StructuredAction,
    SyncAction,
    ThoughtAction,
    ToolAction,
)
from react_harness.parser import XML_CODEC, parse
from react_harness.safety import run_safety_checks

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_MAX_STEPS = 50
OPERATION_COMPLETE = "Operation complete"


# ---------------------------------------------------------------------------
# System Prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are an advanced AI assistant designed to solve tasks systematically and safely.

Guidelines:
1. Break down complex tasks into manageable steps
2. Use available tools strategically and safely
3. Provide clear, step-by-step reasoning
4. Call at most one tool per response and wait for its observation

{format_guide}

IMPORTANT:
- Dangerous operations will be blocked; explain instead of attempting them
- Tool calls may require user confirmation
- Stop once you can give a final answer

Available tools:
{tools}\
"""


def build_preamble(codec, tools: ToolRegistry) -> str:
    return SYSTEM_PROMPT.replace("{format_guide}", codec.format_guide).replace(
        "{tools}", tools.describe() or "(none)"
    )


# ---------------------------------------------------------------------------
# Model collaborator
# ---------------------------------------------------------------------------


class ChatModel(Protocol):
    def infer(self, messages: Sequence[Message], options: Mapping | None = None) -> str: ...


class OpenAIChatModel:
    """
    Any OpenAI-compatible chat completions endpoint (OpenRouter by default).

    Tool observations are sent with the ``user`` role: they are plain text,
    not native tool-call results.
    """

    def __init__(
        self,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1",
        api_key: str | None = None,
        client: OpenAI | None = None,
    ) -> None:
        self.name = model
        self._client = client or OpenAI(
            base_url=base_url,
            api_key=api_key or os.getenv("OPENROUTER_API_KEY"),
        )

    def infer(self, messages: Sequence[Message], options: Mapping | None = None) -> str:
        response = self._client.chat.completions.create(
            model=self.name,
            messages=[
                {
                    "role": "user" if message.role is Role.TOOL else message.role.value,
                    "content": message.content,
                }
                for message in messages
            ],
            **dict(options or {}),
        )
        return (response.choices[0].message.content or "").strip()


# ---------------------------------------------------------------------------
# AgentLoop
# ---------------------------------------------------------------------------


class AgentLoop:
    """
    Runs the reason-then-act state machine for conversation threads.

    Example:
        loop = AgentLoop(
            model=OpenAIChatModel("anthropic/claude-3.5-haiku"),
            tools=ToolRegistry(TOOLS),
            policy=SafetyPolicy(dangerous_patterns={"rm -rf"}),
        )
        state = loop.run("thread-1", ["What is 6 * 7?"])

    One instance may serve many threads concurrently; invocations for the
    same thread id are serialized.
    """

    def __init__(
        self,
        model: ChatModel,
        tools: ToolRegistry,
        policy: SafetyPolicy | None = None,
        memory: MemoryStore | None = None,
        interaction: InteractionCoordinator | None = None,
        codec=XML_CODEC,
        retry: RetryPolicy | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_steps: int = DEFAULT_MAX_STEPS,
        sentinel_aborts: bool = False,
        model_options: Mapping | None = None,
    ) -> None:
        self._model = model
        self._tools = tools.freeze()
        self._policy = policy or SafetyPolicy()
        self._memory = memory or MemoryStore()
        self._interaction = interaction
        self._codec = codec
        self._retry = retry or RetryPolicy()
        self._model_options = dict(model_options or {})
        self._thread_locks = KeyLocks()
        self.max_iterations = max_iterations
        self.max_steps = max_steps
        self.sentinel_aborts = sentinel_aborts

        if (self._policy.require_confirmation or self._policy.require_feedback) and interaction is None:
            raise ValueError("An InteractionCoordinator is required when confirmation or feedback is enabled.")

        self.preamble = build_preamble(codec, self._tools)
        display.banner(getattr(model, "name", type(model).__name__), self._tools.names(), max_iterations)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _say(self, action: StructuredAction) -> Message:
        return Message(role=Role.ASSISTANT, content=self._codec.encode(action))

    def _fail(self, state: ConversationState, kind: ErrorKind, message: str) -> ConversationState:
        """Terminal error: record it in the log and on the state, then end."""
        logger.error("Thread %s ended with %s: %s", state.thread_id, kind.value, message)
        display.halt(message)
        return state.model_copy(
            update={
                "messages": [*state.messages, self._say(ErrorAction(content=message))],
                "status": Status.END,
                "error": LoopError(kind=kind, message=message),
                "pending_action": None,
            }
        )

    def build_request(self, state: ConversationState) -> list[Message]:
        """Fixed preamble followed by the conversation so far."""
        return [Message(role=Role.SYSTEM, content=self.preamble), *state.messages]

    # ------------------------------------------------------------------
    # One step
    # ------------------------------------------------------------------

    def step(self, state: ConversationState, cancel: threading.Event | None = None) -> ConversationState:
        """Ask the model for one action and apply it. Returns the new state."""
        if cancel is not None and cancel.is_set():
            return self._fail(state, ErrorKind.ABORTED, "Operation aborted")

        try:
            raw = self._model.infer(self.build_request(state), self._model_options)
        except Exception as exc:
            logger.exception("Model call failed on thread %s", state.thread_id)
            return self._fail(state, ErrorKind.MODEL, f"Model call failed: {exc}")
        logger.debug("Raw model response on %s: %r", state.thread_id, raw)

        if cancel is not None and cancel.is_set():
            return self._fail(state, ErrorKind.ABORTED, "Operation aborted")

        action = parse(raw, self._codec)
        if isinstance(action, ParseError):
            return self._fail(state, ErrorKind.PARSE, f"Failed to parse model response: {action.reason}")
        return self.apply(state, action, cancel)

    def apply(
        self, state: ConversationState, action: StructuredAction, cancel: threading.Event | None = None
    ) -> ConversationState:
        """Route a parsed action to its handler."""
        if isinstance(action, (FinalAction, ChatAction)):
            display.final_result(action.content)
            return state.append(self._say(action)).model_copy(update={"status": Status.END})

        if isinstance(action, (ThoughtAction, ObservationAction, FeedbackAction)):
            display.react_thought(action.content)
            return state.append(self._say(action)).model_copy(update={"status": Status.CONTINUE})

        if isinstance(action, ToolAction):
            return self._run_tool(state, action, cancel)

        if isinstance(action, (EditAction, ComposeAction, SyncAction)):
            display.file_operation(action.type, action.file if isinstance(action, EditAction) else action.path)
            display.final_result(OPERATION_COMPLETE)
            return state.append(
                self._say(action), self._say(FinalAction(content=OPERATION_COMPLETE))
            ).model_copy(update={"status": Status.END})

        if isinstance(action, ErrorAction):
            return self._fail(state, ErrorKind.MODEL, f"Model reported an error: {action.content}")

        return self._fail(
            state, ErrorKind.UNKNOWN_ACTION, f"Unknown response type: {getattr(action, 'type', action)}"
        )

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def _run_tool(
        self, state: ConversationState, action: ToolAction, cancel: threading.Event | None
    ) -> ConversationState:
        """
        Gate and execute one tool call.

        Order: registry lookup → safety gate → confirmation → dispatch →
        feedback. Every gate raises its own ReactHarnessError and each one
        becomes a terminal error; a failed tool ends the loop after its
        observation has been recorded.
        """
        name = action.action
        display.react_thought(action.thought)
        display.react_action(name, action.args)
        state = state.append(self._say(action)).model_copy(update={"pending_action": action})

        try:
            tool = self._tools.require(name)

            serialized = json.dumps(action.args, sort_keys=True, ensure_ascii=False)
            safety = run_safety_checks(name, serialized, self._policy)
            if not safety.passed:
                raise SafetyViolation(f"Tool execution blocked: {safety.reason or 'Safety check failed'}")
            display.safety_gate_pass(name)

            if self._policy.require_confirmation:
                confirmation = self._interaction.request_confirmation(state, name, action.args, cancel)
                state = confirmation.state
                if not confirmation.confirmed:
                    if confirmation.outcome is InputOutcome.ANSWERED:
                        raise UserRejected("Tool execution rejected by user")
                    unavailable = (
                        UserInputAborted if confirmation.outcome is InputOutcome.ABORTED else UserInputTimeout
                    )
                    raise unavailable(f"No confirmation received for tool {name} ({confirmation.outcome.value})")

            result, state = execute_tool(
                state, tool, serialized, cancel=cancel, retry=self._retry, codec=self._codec
            )
            state = state.model_copy(update={"iteration": state.iteration + 1, "pending_action": None})
            display.tool_result(name, result.success, result.output, result.attempts)

            if result.aborted:
                return self._fail(state, ErrorKind.ABORTED, f"Tool {name} aborted: {result.error}")

            issue_reported = False
            if self._policy.require_feedback:
                feedback = self._interaction.request_feedback(state, name, result, safety, cancel)
                tool_feedback = dict(state.tool_feedback)
                if feedback.issue_reported:
                    tool_feedback.pop(name, None)
                    issue_reported = True
                elif feedback.feedback is not None:
                    tool_feedback[name] = feedback.feedback
                state = feedback.state.model_copy(update={"tool_feedback": tool_feedback})
                display.feedback_recorded(name, feedback.feedback, feedback.issue_reported)

            if not result.success:
                raise ToolExecutionError(f"Tool {name} failed: {result.output}")
        except ToolNotFoundError as exc:
            display.tool_not_found(name)
            return self._fail(state, exc.kind, str(exc))
        except SafetyViolation as exc:
            display.safety_gate_fail(str(exc))
            return self._fail(state, exc.kind, str(exc))
        except ReactHarnessError as exc:
            return self._fail(state, exc.kind, str(exc))

        if issue_reported and self.sentinel_aborts:
            return self._fail(state, ErrorKind.ISSUE_REPORTED, f"User reported an issue with tool {name}")
        return state.model_copy(update={"status": Status.CONTINUE})

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def loop(
        self,
        state: ConversationState,
        cancel: threading.Event | None = None,
        channel: MessageChannel | None = None,
    ) -> ConversationState:
        """
        Step until the state ends or ``max_iterations`` tool calls have run.

        Non-tool steps do not count as iterations; ``max_steps`` bounds them
        so a model that only ever thinks still terminates.
        """
        steps = 0
        while state.status is Status.CONTINUE and state.iteration < self.max_iterations:
            before = len(state.messages)
            if steps >= self.max_steps:
                state = self._fail(state, ErrorKind.STEP_LIMIT, f"Step limit ({self.max_steps}) reached")
            else:
                steps += 1
                display.step_start(steps, state.iteration, self.max_iterations)
                state = self.step(state, cancel)
            if channel is not None:
                for message in state.messages[before:]:
                    channel.publish(message)

        if state.status is Status.CONTINUE:
            logger.info("Thread %s hit the iteration limit (%d)", state.thread_id, self.max_iterations)
            display.iteration_limit(self.max_iterations)
            state = state.model_copy(update={"status": Status.END})
        return state

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(
        self,
        thread_id: str,
        messages: Iterable[Message | str],
        cancel: threading.Event | None = None,
        subscribers: Iterable[Subscriber] = (),
    ) -> ConversationState:
        """
        Full invocation for one thread.

        Returns the final state in all cases. Terminal errors are reported on
        ``state.error`` and in the message log, never raised.
        """
        inbound = [
            message if isinstance(message, Message) else Message(role=Role.USER, content=message)
            for message in messages
        ]
        with self._thread_locks(thread_id), MessageChannel(thread_id) as channel:
            for subscriber in subscribers:
                channel.subscribe(subscriber)

            state = self._memory.hydrate(thread_id, inbound)
            display.invocation_start(thread_id, len(state.messages) - len(inbound), inbound)
            for message in inbound:
                channel.publish(message)

            state = self.loop(state, cancel=cancel, channel=channel)

            saved = self._memory.save(thread_id, state)
            display.invocation_end(thread_id, state.status.value, state.iteration, saved)
            return state

    def run_many(
        self,
        requests: Mapping[str, Iterable[Message | str]],
        cancel: threading.Event | None = None,
        max_workers: int | None = None,
    ) -> dict[str, ConversationState]:
        """Run independent threads concurrently; returns final states by thread id."""
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="react-loop") as pool:
            futures = {
                thread_id: pool.submit(self.run, thread_id, list(messages), cancel)
                for thread_id, messages in requests.items()
            }
            return {thread_id: future.result() for thread_id, future in futures.items()}
