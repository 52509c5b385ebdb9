# errors.py
# Failure taxonomy for the loop.
#
# Most of these never escape the package: the controller turns them into a
# terminal `error` action plus a tagged LoopError on the returned state.
# PersistenceError is the exception: the checkpoint stores raise it and the
# memory layer logs and drops it.

from enum import Enum


class ErrorKind(str, Enum):
    PARSE = "parse"
    SAFETY = "safety"
    TOOL_NOT_FOUND = "tool_not_found"
    TOOL_EXECUTION = "tool_execution"
    USER_REJECTED = "user_rejected"
    USER_INPUT_UNAVAILABLE = "user_input_unavailable"
    ABORTED = "aborted"
    ISSUE_REPORTED = "issue_reported"
    UNKNOWN_ACTION = "unknown_action"
    STEP_LIMIT = "step_limit"
    MODEL = "model"


class ReactHarnessError(Exception):
    """Base class for every error raised by this package."""

    kind: ErrorKind = ErrorKind.UNKNOWN_ACTION


class ParseError(ReactHarnessError):
    """Model output could not be decoded into a structured action."""

    kind = ErrorKind.PARSE

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ParseError) and other.reason == self.reason

    def __hash__(self) -> int:
        return hash(("ParseError", self.reason))


class SafetyViolation(ReactHarnessError):
    """A proposed tool call failed the safety gate."""

    kind = ErrorKind.SAFETY


class ToolNotFoundError(ReactHarnessError):
    """Raised when the model requests a tool absent from the registry."""

    kind = ErrorKind.TOOL_NOT_FOUND


class ToolExecutionError(ReactHarnessError):
    """A tool failed on every permitted attempt."""

    kind = ErrorKind.TOOL_EXECUTION


class UserRejected(ReactHarnessError):
    kind = ErrorKind.USER_REJECTED


class UserInputTimeout(ReactHarnessError):
    """No human answer arrived before the deadline."""

    kind = ErrorKind.USER_INPUT_UNAVAILABLE


class UserInputAborted(ReactHarnessError):
    """The wait for a human answer was cancelled."""

    kind = ErrorKind.USER_INPUT_UNAVAILABLE


class PersistenceError(ReactHarnessError):
    """Checkpoint storage failed. Always soft."""
