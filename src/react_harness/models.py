# models.py
# Data contracts for the reason-then-act loop.
# Schema and validation only.

import time
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from react_harness.errors import ErrorKind


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Status(str, Enum):
    CONTINUE = "continue"
    END = "end"


class Message(BaseModel):
    """One entry of the conversation log."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: int = Field(default_factory=now_ms, description="Epoch milliseconds.")


class LoopError(BaseModel):
    """Why a loop ended on a terminal error."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str


# ---------------------------------------------------------------------------
# Structured actions
# ---------------------------------------------------------------------------


class _Action(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ThoughtAction(_Action):
    type: Literal["thought"] = "thought"
    content: str


class ChatAction(_Action):
    type: Literal["chat"] = "chat"
    content: str


class FinalAction(_Action):
    type: Literal["final"] = "final"
    content: str


class ObservationAction(_Action):
    type: Literal["observation"] = "observation"
    content: str


class FeedbackAction(_Action):
    type: Literal["feedback"] = "feedback"
    content: str


class ErrorAction(_Action):
    type: Literal["error"] = "error"
    content: str


class ToolAction(_Action):
    type: Literal["tool"] = "tool"
    thought: str = Field(default="", description="Reasoning that led to the call.")
    action: str = Field(..., min_length=1, description="Tool name; must exist in the registry.")
    args: dict = Field(default_factory=dict, description="Tool arguments.")


class FileChange(_Action):
    op: Literal["insert", "update", "delete"]
    location: str
    content: str = ""


class EditAction(_Action):
    type: Literal["edit"] = "edit"
    file: str = Field(..., min_length=1)
    changes: list[FileChange] = Field(..., min_length=1)


class ComposeAction(_Action):
    type: Literal["compose"] = "compose"
    path: str = Field(..., min_length=1)
    content: str


class SyncAction(_Action):
    type: Literal["sync"] = "sync"
    path: str = Field(..., min_length=1)
    content: str


StructuredAction = Annotated[
    Union[
        ThoughtAction,
        ChatAction,
        FinalAction,
        ObservationAction,
        FeedbackAction,
        ErrorAction,
        ToolAction,
        EditAction,
        ComposeAction,
        SyncAction,
    ],
    Field(discriminator="type"),
]

ACTION_ADAPTER: TypeAdapter = TypeAdapter(StructuredAction)

TEXT_ACTION_TYPES = ("thought", "chat", "final", "observation", "feedback", "error")
FILE_ACTION_TYPES = ("edit", "compose", "sync")


class ConversationState(BaseModel):
    """
    Everything one invocation of the loop owns for a thread.

    Treated as a value: components return updated copies via
    ``model_copy(update=...)`` instead of mutating the instance they were given.
    """

    thread_id: str
    messages: list[Message] = Field(default_factory=list)
    iteration: int = Field(default=0, ge=0)
    status: Status = Status.CONTINUE
    tool_feedback: dict[str, str] = Field(default_factory=dict)
    pending_action: ToolAction | None = None
    last_observation: str | None = None
    error: LoopError | None = None

    def append(self, *messages: Message) -> "ConversationState":
        return self.model_copy(update={"messages": [*self.messages, *messages]})


# ---------------------------------------------------------------------------
# Safety, tools, persistence
# ---------------------------------------------------------------------------


class SafetyPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_input_length: int = Field(default=8192, gt=0)
    dangerous_patterns: frozenset[str] = Field(default_factory=frozenset)
    require_confirmation: bool = False
    require_feedback: bool = False


class SafetyCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    passed: bool
    reason: str | None = None
    warnings: list[str] = Field(default_factory=list)


MAX_RETRIES = 3
INITIAL_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 5.0


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=MAX_RETRIES, ge=1)
    initial_delay: float = Field(
        default=INITIAL_RETRY_DELAY, ge=0, description="Seconds before the second attempt."
    )
    max_delay: float = Field(default=MAX_RETRY_DELAY, ge=0)

    def delays(self) -> list[float]:
        """Waits between consecutive attempts, in order."""
        waits: list[float] = []
        delay = self.initial_delay
        for _ in range(self.max_retries - 1):
            waits.append(min(delay, self.max_delay))
            delay *= 2
        return waits


class ToolExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    output: str
    error: str | None = None
    aborted: bool = False
    attempts: int = 0


SCHEMA_VERSION = 1


class Checkpoint(BaseModel):
    """Persisted snapshot of a ConversationState, keyed by namespace and thread."""

    thread_id: str
    namespace: str
    snapshot: str = Field(..., description="ConversationState serialized as JSON.")
    timestamp: int = Field(default_factory=now_ms)
    schema_version: int = SCHEMA_VERSION
