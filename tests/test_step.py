"""Tests for the Step data model and its pure helpers."""

import pytest

from stepwise.step import (
    Action,
    Step,
    ToolCall,
    canonical_action,
    extract_step_number,
    normalize_tool_params,
    params_to_args,
)


class TestNormalizeToolParams:
    def test_object_form(self):
        assert normalize_tool_params({"path": "/tmp/x"}) == {"path": "/tmp/x"}

    def test_key_value_array_matches_object_form(self):
        obj = normalize_tool_params({"path": "/tmp/x", "limit": "5"})
        kv = normalize_tool_params(
            [{"key": "path", "value": "/tmp/x"}, {"key": "limit", "value": "5"}]
        )
        assert obj == kv

    def test_assignment_strings(self):
        assert normalize_tool_params(["a=1", "b=x=y"]) == {"a": "1", "b": "x=y"}

    def test_list_of_plain_dicts(self):
        assert normalize_tool_params([{"a": 1}, {"b": 2}]) == {"a": "1", "b": "2"}

    def test_value_coercion(self):
        params = normalize_tool_params(
            {"flag": True, "off": False, "n": 3, "f": 1.5, "obj": {"k": [1, 2]}}
        )
        assert params == {
            "flag": "true",
            "off": "false",
            "n": "3",
            "f": "1.5",
            "obj": '{"k":[1,2]}',
        }

    def test_empty_inputs(self):
        assert normalize_tool_params(None) == {}
        assert normalize_tool_params("") == {}
        assert normalize_tool_params([]) == {}

    def test_blank_keys_dropped(self):
        assert normalize_tool_params([{"key": " ", "value": "v"}, "=v"]) == {}

    def test_unsupported_type(self):
        with pytest.raises(TypeError, match="int"):
            normalize_tool_params(42)


class TestExtractStepNumber:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Working on Step 3 of 5", 3),
            ("step 3/5 in progress", 3),
            ("I have completed step 2 and move on", 2),
            ("now at step 4", 4),
            ("step #7", 7),
            ("STEP 9 OF 12", 9),
        ],
    )
    def test_patterns(self, text, expected):
        assert extract_step_number(text) == expected

    def test_of_pattern_wins_over_plain(self):
        assert extract_step_number("step 1 was easy, now step 2 of 4") == 2

    def test_no_number(self):
        assert extract_step_number("reading the file") is None
        assert extract_step_number("") is None


class TestStep:
    def test_fill_progress_from_reasoning(self):
        s = Step(reasoning="  need the file  ", next_step="read it")
        s.fill_progress()
        assert s.progress == "need the file"

    def test_fill_progress_from_next_step(self):
        s = Step(next_step="read it")
        s.fill_progress()
        assert s.progress == "read it"

    def test_fill_progress_keeps_existing(self):
        s = Step(progress="half way", reasoning="r")
        s.fill_progress()
        assert s.progress == "half way"

    def test_resolved_action(self):
        assert Step(action="iterate").resolved_action() == Action.ITERATE
        assert Step(action="").resolved_action() == Action.DONE
        assert Step(action="Explore").resolved_action() == Action.DONE

    def test_canonical_action_keeps_unknown_text(self):
        assert canonical_action(" SOLVE ") == "Solve"
        assert canonical_action("Explore") == "Explore"


class TestToolCall:
    def test_from_step(self):
        step = Step(tool="fs/read_file", tool_params={"path": "a.txt", "n": "2"})
        call = ToolCall.from_step(step)
        assert call.name == "fs/read_file"
        assert call.args == ["path=a.txt", "n=2"]
        assert call.to_string() == "fs/read_file path=a.txt n=2"

    def test_to_string_without_args(self):
        assert ToolCall("list").to_string() == "list"

    def test_params_to_args_order(self):
        assert params_to_args({"b": "2", "a": "1"}) == ["b=2", "a=1"]
