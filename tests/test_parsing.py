"""Tests for turning model replies into Steps (schema JSON and tagged text)."""

import json

import pytest

from stepwise.parsing import (
    SchemaParser,
    TaggedTextParser,
    extract_json_block,
    extract_tag,
    make_parser,
    parse_call_block,
    strip_json_comments,
    strip_list_prefix,
)
from stepwise.report import ParseError


def _reply(**fields):
    base = {
        "plan": ["find file", "read file"],
        "current_plan_index": 1,
        "progress": "Step 2 of 2",
        "reasoning": "need contents",
        "next_step": "summarize",
        "action": "Iterate",
        "tool_required": True,
        "tool": "read_file",
        "tool_params": {"path": "notes.txt"},
    }
    base.update(fields)
    return json.dumps(base)


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------


class TestExtractJsonBlock:
    def test_json_fence(self):
        text = 'Here you go:\n```json\n{"a": 1}\n```\nthanks'
        payload, explanation = extract_json_block(text)
        assert payload == '{"a": 1}'
        assert "Here you go:" in explanation
        assert "thanks" in explanation

    def test_untagged_fence_with_object(self):
        payload, _ = extract_json_block('```\n{"a": 1}\n```')
        assert payload == '{"a": 1}'

    def test_bare_object_in_prose(self):
        payload, explanation = extract_json_block('I think {"a": {"b": "}"}} is right')
        assert payload == '{"a": {"b": "}"}}'
        assert explanation == "I think  is right"

    def test_nothing_found(self):
        assert extract_json_block("no json here") == ("", "no json here")


class TestStripJsonComments:
    def test_line_and_block_comments(self):
        text = '{\n  "a": 1, // one\n  /* two */ "b": 2,\n}'
        assert json.loads(strip_json_comments(text)) == {"a": 1, "b": 2}

    def test_urls_survive(self):
        text = '{"url": "http://example.com/*x*/"} // trailing'
        assert json.loads(strip_json_comments(text)) == {
            "url": "http://example.com/*x*/"
        }


# ---------------------------------------------------------------------------
# SchemaParser
# ---------------------------------------------------------------------------


class TestSchemaParser:
    def test_plain_object(self):
        step = SchemaParser().parse(_reply())
        assert step.plan == ["find file", "read file"]
        assert step.plan_index == 1
        assert step.action == "Iterate"
        assert step.tool == "read_file"
        assert step.tool_params == {"path": "notes.txt"}
        assert step.tool_required is True

    def test_kv_and_object_forms_agree(self):
        obj = SchemaParser("object").parse(_reply())
        kv = SchemaParser("kv").parse(
            _reply(tool_params=[{"key": "path", "value": "notes.txt"}])
        )
        assert obj.tool_params == kv.tool_params == {"path": "notes.txt"}

    def test_think_block_and_special_prefix(self):
        text = "<think>hmm { not json</think><|channel|>final<|message|>" + _reply()
        assert SchemaParser().parse(text).tool == "read_file"

    def test_fenced_with_comments(self):
        text = '```json\n{"action": "Done", // finished\n "plan": [],}\n```'
        step = SchemaParser().parse(text)
        assert step.action == "Done"
        assert step.plan == []

    def test_unrecoverable_done(self):
        step = SchemaParser().parse('{"action": "Done", "plan": [oops}')
        assert step.action == "Done"
        assert step.next_step == "Cannot recover from invalid json parsing"

    def test_invalid_json_raises(self):
        with pytest.raises(ParseError, match="invalid JSON"):
            SchemaParser().parse('{"action": "Iterate", "plan": [oops}')

    def test_empty_reply(self):
        with pytest.raises(ParseError, match="empty"):
            SchemaParser().parse("   ")

    def test_no_object(self):
        with pytest.raises(ParseError, match="no JSON object"):
            SchemaParser().parse("I will read the file now.")

    def test_tool_required_defaults_from_tool(self):
        data = json.loads(_reply())
        del data["tool_required"]
        assert SchemaParser().parse(json.dumps(data)).tool_required is True
        data["tool"] = ""
        assert SchemaParser().parse(json.dumps(data)).tool_required is False

    def test_loose_types(self):
        step = SchemaParser().parse(
            _reply(current_plan_index="2", tool_required="yes", plan="a\n2. b")
        )
        assert step.plan_index == 2
        assert step.tool_required is True
        assert step.plan == ["a", "b"]

    def test_bad_tool_params_type(self):
        with pytest.raises(ParseError, match="unsupported tool_params"):
            SchemaParser().parse(_reply(tool_params=5))

    def test_progress_synthesized(self):
        step = SchemaParser().parse(_reply(progress=""))
        assert step.progress == "need contents"

    def test_schema_dialects(self):
        obj = SchemaParser("object").response_schema
        kv = SchemaParser("kv").response_schema
        assert obj["properties"]["tool_params"]["type"] == "object"
        assert kv["properties"]["tool_params"]["type"] == "array"
        for schema in (obj, kv):
            assert schema["properties"]["action"]["enum"] == [
                "Done",
                "Solve",
                "Think",
                "Iterate",
                "Error",
            ]

    def test_unknown_dialect(self):
        with pytest.raises(ValueError):
            SchemaParser("yaml")


# ---------------------------------------------------------------------------
# Tagged text
# ---------------------------------------------------------------------------


TAGGED = """<plan>
1. find file
2) read file
- summarize
</plan>
<reasoning>need the contents</reasoning>
<call>
action: Iterate
plan_index: 1
tool: fs.read_file
path = notes.txt
</call>"""


class TestTaggedTextParser:
    def test_full_reply(self):
        step = TaggedTextParser().parse(TAGGED)
        assert step.plan == ["find file", "read file", "summarize"]
        assert step.reasoning == "need the contents"
        assert step.action == "Iterate"
        assert step.plan_index == 1
        assert step.tool == "fs/read_file"
        assert step.tool_params == {"path": "notes.txt"}
        assert step.tool_required is True
        assert step.progress == "need the contents"

    def test_missing_call_block(self):
        with pytest.raises(ParseError, match="missing <call> block"):
            TaggedTextParser().parse("<plan>1. a</plan><reasoning>r</reasoning>")

    def test_case_insensitive_and_unclosed(self):
        step = TaggedTextParser().parse("<PLAN>a</PLAN>\n<Call>\naction: Done\n")
        assert step.plan == ["a"]
        assert step.action == "Done"
        assert step.tool == ""
        assert step.tool_required is False

    def test_bare_shorthand_line(self):
        step = TaggedTextParser().parse(
            "<call>\naction: Iterate\nsearch query='two words' limit=3\n</call>"
        )
        assert step.tool == "search"
        assert step.tool_params == {"query": "two words", "limit": "3"}

    def test_tool_value_shorthand(self):
        step = TaggedTextParser().parse("<call>tool: grep pattern=foo dir=src</call>")
        assert step.tool == "grep"
        assert step.tool_params == {"pattern": "foo", "dir": "src"}

    def test_optional_progress_and_next_step_tags(self):
        step = TaggedTextParser().parse(
            "<progress>Step 2 of 3</progress><next_step>read</next_step>"
            "<call>action: Think\ntool_required: true</call>"
        )
        assert step.progress == "Step 2 of 3"
        assert step.next_step == "read"
        assert step.tool_required is True

    def test_no_schema(self):
        parser = TaggedTextParser()
        assert parser.response_schema is None
        assert parser.catalog_format == "markdown"
        assert "<call>" in parser.output_instructions


class TestCallBlock:
    def test_aliases_and_params(self):
        fields, params = parse_call_block(
            "tool_name: ls\ncurrent_plan_index: 2\nstep: 3\ndepth: 1"
        )
        assert fields == {"tool": "ls", "plan_index": "3"}
        assert params == {"depth": "1"}


def test_extract_tag_missing():
    assert extract_tag("<plan>x</plan>", "call") is None


def test_strip_list_prefix():
    assert strip_list_prefix("  3. do it") == "do it"
    assert strip_list_prefix("[x] done") == "done"
    assert strip_list_prefix("* bullet") == "bullet"


def test_make_parser():
    assert isinstance(make_parser("text"), TaggedTextParser)
    assert make_parser("schema", "gemini").dialect == "kv"
    assert make_parser("schema", "openai").dialect == "object"
    with pytest.raises(ValueError):
        make_parser("yaml")
