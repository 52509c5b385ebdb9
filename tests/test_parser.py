import pytest

from react_harness.errors import ParseError
from react_harness.models import (
    ChatAction,
    ComposeAction,
    EditAction,
    FileChange,
    FinalAction,
    ObservationAction,
    SyncAction,
    ThoughtAction,
    ToolAction,
)
from react_harness.parser import JSON_CODEC, XML_CODEC, get_codec, normalize, parse, validate


# ---------------------------------------------------------------------------
# XML envelopes
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("kind", ["thought", "chat", "final", "observation", "feedback", "error"])
def test_text_variants(kind):
    action = parse(f'<response type="{kind}"><content>  some text  </content></response>')
    assert action.type == kind
    assert action.content == "some text"


def test_tool_envelope():
    raw = """
    <response type="tool">
      <thought>I need to divide.</thought>
      <action>calculator</action>
      <args>{"op": "divide", "a": 10, "b": 2}</args>
    </response>
    """
    assert parse(raw) == ToolAction(
        thought="I need to divide.", action="calculator", args={"op": "divide", "a": 10, "b": 2}
    )


def test_tool_envelope_without_thought():
    action = parse('<response type="tool"><action>echo</action><args>{}</args></response>')
    assert action == ToolAction(action="echo", args={})


def test_tool_args_may_be_fenced_and_multiline():
    raw = (
        '<response type="tool"><thought>t</thought><action>echo</action>'
        '<args>```json\n{"message": "line one\nline two"}\n```</args></response>'
    )
    assert parse(raw).args == {"message": "line one\nline two"}


def test_envelope_wrapped_in_code_fence():
    raw = '```xml\n<response type="final"><content>42</content></response>\n```'
    assert parse(raw) == FinalAction(content="42")


def test_envelope_with_surrounding_prose():
    raw = 'Sure, here you go:\n<response type="chat"><content>Hi</content></response>\nThanks!'
    assert parse(raw) == ChatAction(content="Hi")


def test_escaped_content_is_unescaped():
    raw = '<response type="final"><content>a &lt; b &amp;&amp; c &gt; d</content></response>'
    assert parse(raw).content == "a < b && c > d"


def test_edit_envelope():
    raw = """
    <response type="edit">
      <file>src/app.py</file>
      <changes>
        <change type="insert"><location>3</location><content>import os</content></change>
        <change type="delete"><location>10-12</location><content></content></change>
      </changes>
    </response>
    """
    assert parse(raw) == EditAction(
        file="src/app.py",
        changes=[
            FileChange(op="insert", location="3", content="import os"),
            FileChange(op="delete", location="10-12", content=""),
        ],
    )


def test_compose_and_sync_envelopes():
    compose = parse(
        '<response type="compose"><file><path>notes.txt</path><content>hello</content></file></response>'
    )
    sync = parse('<response type="sync"><file><path>a.txt</path><content>x</content></file></response>')
    assert compose == ComposeAction(path="notes.txt", content="hello")
    assert sync == SyncAction(path="a.txt", content="x")


def test_xml_encode_decodes_to_same_action():
    action = ToolAction(thought="a <b> & c", action="echo", args={"message": "<hi>"})
    assert parse(XML_CODEC.encode(action)) == action


# ---------------------------------------------------------------------------
# XML parse failures
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, reason",
    [
        ("", "Empty response"),
        ("   \n  ", "Empty response"),
        ('<response type="dance"><content>x</content></response>', "Unknown response type: dance"),
        ('<response type="final">no content tags</response>', "Invalid final response format"),
        ('<response type="tool"><thought>t</thought><args>{}</args></response>', "Invalid tool response format"),
        ('<response type="tool"><action>echo</action></response>', "Invalid tool response format"),
        ('<response type="tool"><action>echo</action><args>[1, 2]</args></response>', "Tool args must be a JSON object"),
        ('<response type="edit"><file>a.py</file><changes></changes></response>', "Invalid edit response format"),
        ('<response type="compose"><content>x</content></response>', "Invalid compose response format"),
    ],
)
def test_parse_errors(raw, reason):
    assert parse(raw) == ParseError(reason)


def test_invalid_json_args():
    result = parse('<response type="tool"><action>echo</action><args>{"a": }</args></response>')
    assert isinstance(result, ParseError)
    assert result.reason.startswith("Invalid JSON in tool arguments")


def test_empty_tool_name_fails_validation():
    result = parse('<response type="tool"><action></action><args>{}</args></response>')
    assert isinstance(result, ParseError)
    assert result.reason.startswith("Invalid tool response: action")


def test_unknown_change_op_fails_validation():
    raw = (
        '<response type="edit"><file>a.py</file><changes>'
        '<change type="rename"><location>1</location><content>x</content></change>'
        "</changes></response>"
    )
    result = parse(raw)
    assert isinstance(result, ParseError)
    assert result.reason.startswith("Invalid edit response")


def test_parse_is_deterministic():
    raw = '<response type="tool"><action>echo</action><args>{bad</args></response>'
    assert parse(raw) == parse(raw)
    good = '<response type="final"><content>ok</content></response>'
    assert parse(good) == parse(good)


# ---------------------------------------------------------------------------
# Heuristic normalization
# ---------------------------------------------------------------------------


def test_normalize_empty_is_none():
    assert normalize("   ") is None


def test_normalize_tool_lines():
    text = 'Thought: I should add.\nAction: calculator\nArgs: {"op": "add", "a": 1, "b": 2}'
    assert normalize(text) == {
        "type": "tool",
        "thought": "I should add.",
        "action": "calculator",
        "args": {"op": "add", "a": 1, "b": 2},
    }


def test_normalize_action_input_alias():
    fields = normalize('Tool: echo\nAction Input: {"message": "hi"}')
    assert fields["action"] == "echo"
    assert fields["args"] == {"message": "hi"}
    assert fields["thought"] == ""


def test_normalize_tool_without_args_is_error():
    with pytest.raises(ParseError, match="missing Args"):
        normalize("Thought: hmm\nAction: echo")


def test_normalize_tool_wins_over_final():
    fields = normalize("Final Answer: done\nAction: echo\nArgs: {}")
    assert fields["type"] == "tool"


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Thought: working on it\nFinal Answer: 42", {"type": "final", "content": "42"}),
        ("Complete: all done", {"type": "final", "content": "all done"}),
        ("New file: notes.txt\nhello there", {"type": "compose", "path": "notes.txt", "content": "hello there"}),
        ("Create file: a.md\n# Title", {"type": "compose", "path": "a.md", "content": "# Title"}),
        ("Sync: config.yaml\nkey: value", {"type": "sync", "path": "config.yaml", "content": "key: value"}),
        ("Thinking: let me see", {"type": "thought", "content": "let me see"}),
        ("Thought: first step", {"type": "thought", "content": "first step"}),
        ("Just a plain reply.", {"type": "chat", "content": "Just a plain reply."}),
    ],
)
def test_normalize_rules(text, expected):
    assert normalize(text) == expected


def test_parse_falls_back_to_normalize():
    assert parse("Final Answer: 7") == FinalAction(content="7")
    assert parse("Hello there") == ChatAction(content="Hello there")


def test_validate_rejects_unknown_type():
    with pytest.raises(ParseError, match="Unknown response type"):
        validate({"type": "nope", "content": "x"})


def test_validate_rejects_extra_fields():
    with pytest.raises(ParseError, match="Invalid final response"):
        validate({"type": "final", "content": "x", "surprise": 1})


# ---------------------------------------------------------------------------
# JSON envelopes
# ---------------------------------------------------------------------------


def test_json_codec_tool():
    raw = '{"type": "tool", "thought": "t", "action": "echo", "args": {"message": "hi"}}'
    assert parse(raw, JSON_CODEC) == ToolAction(thought="t", action="echo", args={"message": "hi"})


def test_json_codec_args_as_string():
    raw = '{"type": "tool", "action": "echo", "args": "{\\"message\\": \\"hi\\"}"}'
    assert parse(raw, JSON_CODEC).args == {"message": "hi"}


def test_json_codec_unknown_type():
    assert parse('{"type": "dance"}', JSON_CODEC) == ParseError("Unknown response type: dance")


def test_json_codec_missing_field():
    result = parse('{"type": "final"}', JSON_CODEC)
    assert isinstance(result, ParseError)
    assert result.reason.startswith("Invalid final response: content")


def test_json_codec_falls_back_to_normalize():
    assert parse("Thought: no json here", JSON_CODEC) == ThoughtAction(content="no json here")


def test_json_encode_is_stable():
    action = ObservationAction(content="result")
    assert JSON_CODEC.encode(action) == '{"content": "result", "type": "observation"}'
    assert parse(JSON_CODEC.encode(action), JSON_CODEC) == action


def test_xml_codec_ignores_json():
    assert parse('{"type": "final", "content": "x"}', XML_CODEC) == ChatAction(
        content='{"type": "final", "content": "x"}'
    )


def test_get_codec():
    assert get_codec("xml") is XML_CODEC
    assert get_codec("JSON") is JSON_CODEC
    with pytest.raises(ValueError, match="Unknown envelope codec"):
        get_codec("yaml")


@pytest.mark.parametrize(
    "raw",
    ['{"type": ["final"], "content": "x"}', '{"type": {"a": 1}}', '{"type": 7, "content": "x"}'],
)
def test_json_codec_non_string_type_is_parse_error(raw):
    result = parse(raw, JSON_CODEC)
    assert isinstance(result, ParseError)
    assert result.reason.startswith("Unknown response type:")


def test_validate_rejects_non_string_type():
    with pytest.raises(ParseError, match="Unknown response type"):
        validate({"type": ["final"], "content": "x"})
