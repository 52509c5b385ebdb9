# parser.py
# Raw model output -> exactly one StructuredAction.
#
# Two stages, each testable on its own:
#   1. envelope decode: the configured codec recognises its typed envelope
#   2. normalize: fixed heuristic rules rebuild an envelope when the
#      model ignored the format
# Either stage yields a plain field dict that is validated against the
# discriminated union in models.py. parse() never raises and never has side
# effects: the same text always produces the same action or the same error.

import json
import re
from typing import Any
from xml.sax.saxutils import escape, unescape

from pydantic import ValidationError

from react_harness.errors import ParseError
from react_harness.models import (
    ACTION_ADAPTER,
    FILE_ACTION_TYPES,
    TEXT_ACTION_TYPES,
    ComposeAction,
    EditAction,
    StructuredAction,
    SyncAction,
    ToolAction,
)

KNOWN_TYPES = frozenset(TEXT_ACTION_TYPES + FILE_ACTION_TYPES + ("tool",))


def _require_known_type(kind: Any) -> str:
    # models can send any JSON value here; only a known string names a variant
    if not isinstance(kind, str) or kind not in KNOWN_TYPES:
        raise ParseError(f"Unknown response type: {kind if isinstance(kind, str) else repr(kind)}")
    return kind


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _strip_fences(text: str) -> str:
    """Remove a markdown code block wrapped around the payload, if any."""
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```[\w-]*\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    return text.strip()


def _load_args(raw: Any) -> dict:
    """Tool args must be a JSON object; anything else is a parse failure."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        raise ParseError("Tool args must be a JSON object")
    payload = _strip_fences(raw)
    if not payload:
        return {}
    try:
        # strict=False allows literal newlines inside string values
        args = json.loads(payload, strict=False)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid JSON in tool arguments: {exc.msg}") from exc
    if not isinstance(args, dict):
        raise ParseError("Tool args must be a JSON object")
    return args


# ---------------------------------------------------------------------------
# Envelope codecs
# ---------------------------------------------------------------------------


class XmlEnvelopeCodec:
    """
    ``<response type="...">`` envelopes.

    Text variants carry a single ``<content>``; tool calls carry
    ``<thought>``, ``<action>`` and a JSON ``<args>`` body; file variants carry
    their path and content elements.
    """

    name = "xml"

    _ENVELOPE = re.compile(r'<response\s+type="([^"]+)"\s*>(.*?)</response>', re.DOTALL)
    _CONTENT = re.compile(r"<content>(.*?)</content>", re.DOTALL)
    _THOUGHT = re.compile(r"<thought>(.*?)</thought>", re.DOTALL)
    _ACTION = re.compile(r"<action>(.*?)</action>", re.DOTALL)
    _ARGS = re.compile(r"<args>(.*?)</args>", re.DOTALL)
    _FILE = re.compile(r"<file>(.*?)</file>", re.DOTALL)
    _CHANGE = re.compile(
        r'<change\s+type="([^"]+)"\s*>\s*<location>(.*?)</location>\s*'
        r"<content>(.*?)</content>\s*</change>",
        re.DOTALL,
    )
    _FILE_BODY = re.compile(
        r"<file>\s*<path>(.*?)</path>\s*<content>(.*?)</content>\s*</file>", re.DOTALL
    )

    format_guide = """\
Your responses MUST ALWAYS be a single XML envelope. Use exactly one of:

<response type="thought"><content>Your reasoning</content></response>

<response type="tool">
  <thought>Why this tool, with these arguments</thought>
  <action>tool_name</action>
  <args>{"key": "value"}</args>
</response>

<response type="chat"><content>A message for the user</content></response>

<response type="edit">
  <file>path/to/file</file>
  <changes>
    <change type="insert|update|delete">
      <location>line number or range</location>
      <content>The new content</content>
    </change>
  </changes>
</response>

<response type="compose">
  <file><path>path/to/new/file</path><content>File content</content></file>
</response>

<response type="sync">
  <file><path>path/to/file</path><content>File content</content></file>
</response>

<response type="final"><content>Your final answer</content></response>

ALWAYS use valid JSON inside <args>.\
"""

    def detect(self, text: str) -> bool:
        return self._ENVELOPE.search(text) is not None

    def decode(self, text: str) -> dict:
        match = self._ENVELOPE.search(text)
        if match is None:
            raise ParseError("Invalid XML format")
        kind, body = match.group(1).strip(), match.group(2)

        if kind in TEXT_ACTION_TYPES:
            content = self._CONTENT.search(body)
            if content is None:
                raise ParseError(f"Invalid {kind} response format")
            return {"type": kind, "content": unescape(content.group(1).strip())}

        if kind == "tool":
            thought = self._THOUGHT.search(body)
            action = self._ACTION.search(body)
            args = self._ARGS.search(body)
            if action is None or args is None:
                raise ParseError("Invalid tool response format")
            return {
                "type": "tool",
                "thought": unescape(thought.group(1).strip()) if thought else "",
                "action": unescape(action.group(1).strip()),
                "args": _load_args(unescape(args.group(1))),
            }

        if kind == "edit":
            file_match = self._FILE.search(body)
            changes = self._CHANGE.findall(body)
            if file_match is None or not changes:
                raise ParseError("Invalid edit response format")
            return {
                "type": "edit",
                "file": unescape(file_match.group(1).strip()),
                "changes": [
                    {"op": op.strip(), "location": unescape(location.strip()), "content": unescape(content)}
                    for op, location, content in changes
                ],
            }

        if kind in ("compose", "sync"):
            file_match = self._FILE_BODY.search(body)
            if file_match is None:
                raise ParseError(f"Invalid {kind} response format")
            return {
                "type": kind,
                "path": unescape(file_match.group(1).strip()),
                "content": unescape(file_match.group(2).strip()),
            }

        raise ParseError(f"Unknown response type: {kind}")

    def encode(self, action: StructuredAction) -> str:
        if isinstance(action, ToolAction):
            return (
                '<response type="tool">'
                f"<thought>{escape(action.thought)}</thought>"
                f"<action>{escape(action.action)}</action>"
                f"<args>{escape(json.dumps(action.args, sort_keys=True, ensure_ascii=False))}</args>"
                "</response>"
            )
        if isinstance(action, EditAction):
            changes = "".join(
                f'<change type="{change.op}"><location>{escape(change.location)}</location>'
                f"<content>{escape(change.content)}</content></change>"
                for change in action.changes
            )
            return (
                f'<response type="edit"><file>{escape(action.file)}</file>'
                f"<changes>{changes}</changes></response>"
            )
        if isinstance(action, (ComposeAction, SyncAction)):
            return (
                f'<response type="{action.type}"><file><path>{escape(action.path)}</path>'
                f"<content>{escape(action.content)}</content></file></response>"
            )
        return f'<response type="{action.type}"><content>{escape(action.content)}</content></response>'


class JsonEnvelopeCodec:
    """A single JSON object whose ``type`` key names the variant."""

    name = "json"

    format_guide = """\
Your responses MUST ALWAYS be a single JSON object with a "type" key. Use exactly one of:

{"type": "thought", "content": "Your reasoning"}
{"type": "tool", "thought": "Why", "action": "tool_name", "args": {"key": "value"}}
{"type": "chat", "content": "A message for the user"}
{"type": "edit", "file": "path", "changes": [{"op": "insert|update|delete", "location": "12", "content": "..."}]}
{"type": "compose", "path": "path/to/new/file", "content": "File content"}
{"type": "sync", "path": "path/to/file", "content": "File content"}
{"type": "final", "content": "Your final answer"}

Emit nothing outside the JSON object.\
"""

    def _load(self, text: str) -> Any:
        try:
            return json.loads(text, strict=False)
        except json.JSONDecodeError:
            return None

    def detect(self, text: str) -> bool:
        if not text.startswith("{"):
            return False
        payload = self._load(text)
        return isinstance(payload, dict) and "type" in payload

    def decode(self, text: str) -> dict:
        payload = self._load(text)
        if not isinstance(payload, dict) or "type" not in payload:
            raise ParseError("Invalid JSON envelope")
        kind = _require_known_type(payload["type"])
        if kind == "tool":
            payload = {**payload, "args": _load_args(payload.get("args", {}))}
        return payload

    def encode(self, action: StructuredAction) -> str:
        return json.dumps(action.model_dump(mode="json"), sort_keys=True, ensure_ascii=False)


XML_CODEC = XmlEnvelopeCodec()
JSON_CODEC = JsonEnvelopeCodec()

CODECS = {codec.name: codec for codec in (XML_CODEC, JSON_CODEC)}


def get_codec(name: str):
    try:
        return CODECS[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown envelope codec '{name}'. Choose from: {', '.join(sorted(CODECS))}") from None


# ---------------------------------------------------------------------------
# Heuristic normalization
# ---------------------------------------------------------------------------

_TOOL_LINE = re.compile(r"^\s*(?:Action|Tool):\s*([\w.-]+)", re.MULTILINE)
_THOUGHT_BEFORE_TOOL = re.compile(
    r"^\s*Thought:\s*(.*?)(?=^\s*(?:Action|Tool):)", re.MULTILINE | re.DOTALL
)
_ARGS_LINE = re.compile(r"^\s*(?:Args|Action Input):\s*(.*)", re.MULTILINE | re.DOTALL)
_FINAL_MARKER = re.compile(r"(?:Final Answer|Complete):\s*(.*)", re.DOTALL)
_COMPOSE_MARKER = re.compile(r"^\s*(?:New file|Create file):\s*(\S+)[ \t]*\n?(.*)", re.MULTILINE | re.DOTALL)
_SYNC_MARKER = re.compile(r"^\s*Sync:\s*(\S+)[ \t]*\n?(.*)", re.MULTILINE | re.DOTALL)
_THOUGHT_MARKER = re.compile(r"^\s*(?:Thought|Thinking):\s*(.*)", re.MULTILINE | re.DOTALL)


def normalize(text: str) -> dict | None:
    """
    Rebuild a canonical field dict from output that carries no envelope.

    Rules are tried in this order; the first match wins:
      1. empty text          -> None (no action can be rebuilt)
      2. ``Action:``/``Tool:`` line -> tool (``Thought:`` and ``Args:`` /
         ``Action Input:`` lines fill the rest; no args line is a ParseError)
      3. ``Final Answer:`` / ``Complete:`` -> final
      4. ``New file:`` / ``Create file:`` -> compose
      5. ``Sync:`` -> sync
      6. ``Thought:`` / ``Thinking:`` -> thought
      7. anything else -> chat carrying the whole text
    """
    text = text.strip()
    if not text:
        return None

    tool = _TOOL_LINE.search(text)
    if tool:
        args = _ARGS_LINE.search(text)
        if args is None:
            raise ParseError("Tool response is missing Args")
        thought = _THOUGHT_BEFORE_TOOL.search(text)
        return {
            "type": "tool",
            "thought": thought.group(1).strip() if thought else "",
            "action": tool.group(1),
            "args": _load_args(args.group(1)),
        }

    final = _FINAL_MARKER.search(text)
    if final:
        return {"type": "final", "content": final.group(1).strip()}

    for kind, marker in (("compose", _COMPOSE_MARKER), ("sync", _SYNC_MARKER)):
        match = marker.search(text)
        if match:
            return {"type": kind, "path": match.group(1), "content": match.group(2).strip()}

    thought = _THOUGHT_MARKER.search(text)
    if thought:
        return {"type": "thought", "content": thought.group(1).strip()}

    return {"type": "chat", "content": text}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def validate(fields: dict) -> StructuredAction:
    """Validate a field dict against the action union. Raises ParseError."""
    kind = _require_known_type(fields.get("type"))
    try:
        return ACTION_ADAPTER.validate_python(fields)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"][1:]) or kind
        raise ParseError(f"Invalid {kind} response: {location}: {first['msg']}") from exc


def parse(raw: str, codec=XML_CODEC) -> StructuredAction | ParseError:
    """
    Decode raw model output into one StructuredAction.

    Returns (never raises) a ParseError when the text cannot be turned into a
    valid action. The controller treats that as terminal; it is never retried.
    """
    try:
        if raw is None or not raw.strip():
            raise ParseError("Empty response")
        text = _strip_fences(raw)
        if codec.detect(text):
            fields = codec.decode(text)
        else:
            fields = normalize(text)
            if fields is None:
                raise ParseError("Empty response")
        return validate(fields)
    except ParseError as exc:
        return exc
