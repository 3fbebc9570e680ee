"""
Truncated JSON repair and review response parsing
"""
import json

import pytest

from oralexam.exceptions import MalformedResponseError
from oralexam.services.code_review import (
    build_review_user_prompt,
    detect_language,
    normalize_issue,
    parse_review_response,
)
from oralexam.services.json_repair import repair_truncated_json, strip_code_fence
from oralexam.services.llm_client import ChatCompletion


def completion(content: str, finish_reason: str = "stop") -> ChatCompletion:
    return ChatCompletion(content=content, finish_reason=finish_reason, model="gpt-test", total_tokens=10)


class TestRepairTruncatedJson:
    """Cut-off provider output is closed at the last usable point."""

    def test_complete_json_is_returned_as_is(self):
        assert repair_truncated_json('{"a": [1, 2]}') == {"a": [1, 2]}

    def test_code_fence_is_stripped(self):
        assert repair_truncated_json('```json\n{"a": 1}\n```') == {"a": 1}

    def test_open_value_string_is_closed(self):
        assert repair_truncated_json('{"feedback": "The code is cle') == {"feedback": "The code is cle"}

    def test_half_written_escape_is_dropped(self):
        assert repair_truncated_json('{"feedback": "line one\\') == {"feedback": "line one"}

    def test_half_written_unicode_escape_is_dropped(self):
        assert repair_truncated_json('{"feedback": "caf\\u00') == {"feedback": "caf"}

    def test_complete_trailing_number_is_kept(self):
        text = '{"feedback": "ok", "issues": [{"type": "error", "line": 4'
        assert repair_truncated_json(text) == {"feedback": "ok", "issues": [{"type": "error", "line": 4}]}

    def test_partial_literal_falls_back_to_last_complete_value(self):
        assert repair_truncated_json("[1, 2, tr") == [1, 2]

    def test_dangling_comma_is_dropped(self):
        assert repair_truncated_json('{"a": 1, ') == {"a": 1}

    def test_dangling_key_is_dropped(self):
        assert repair_truncated_json('{"a": 1, "b": ') == {"a": 1}

    def test_open_key_string_gives_up(self):
        assert repair_truncated_json('{"feedback": "ok", "iss') is None

    def test_nested_containers_are_closed_in_order(self):
        text = '{"discussionPlan": [{"topic": "Loops", "followUpQuestions": ["Why'
        assert repair_truncated_json(text) == {
            "discussionPlan": [{"topic": "Loops", "followUpQuestions": ["Why"]}]
        }

    def test_scalar_top_level_is_rejected(self):
        assert repair_truncated_json('"just a string') is None
        assert repair_truncated_json("42") is None

    def test_structurally_broken_text_is_rejected(self):
        assert repair_truncated_json('{"a" 1, "b"') is None

    def test_strip_code_fence_leaves_plain_text(self):
        assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'


class TestParseReviewResponse:
    """One repair attempt, and only for truncated responses."""

    def test_valid_response(self):
        raw = json.dumps({
            "feedback": "Nice",
            "issues": [{"type": "bogus", "severity": "huge", "description": "x"}],
            "discussionPlan": [{"topic": "Loops", "question": "Why a while loop?"}],
        })
        parsed = parse_review_response(completion(raw))

        assert parsed.feedback == "Nice"
        assert parsed.repaired is False
        assert parsed.issues[0]["type"] == "warning"
        assert parsed.issues[0]["severity"] == "minor"
        assert parsed.discussion_plan[0]["followUpQuestions"] == []

    def test_truncated_response_is_repaired(self):
        raw = '{"feedback": "Good structure", "issues": [], "discussionPlan": [{"topic": "Recursion", "question": "Why does it stop'
        parsed = parse_review_response(completion(raw, finish_reason="length"))

        assert parsed.repaired is True
        assert parsed.feedback == "Good structure"
        assert parsed.discussion_plan[0]["question"] == "Why does it stop"

    def test_invalid_json_that_was_not_truncated_fails(self):
        with pytest.raises(MalformedResponseError):
            parse_review_response(completion('{"feedback": "Good'))

    def test_unrepairable_truncation_fails(self):
        with pytest.raises(MalformedResponseError):
            parse_review_response(completion('{"feedback": "ok", "iss', finish_reason="length"))

    def test_empty_response_fails(self):
        with pytest.raises(MalformedResponseError):
            parse_review_response(completion("   "))

    def test_non_object_response_fails(self):
        with pytest.raises(MalformedResponseError):
            parse_review_response(completion("[1, 2, 3]"))


class TestReviewPrompt:

    def test_language_detection(self):
        assert detect_language("Main.java").name == "Java"
        assert detect_language("tree.PY").name == "Python"
        assert detect_language("notes.txt").name == "programming"
        assert detect_language(None).name == "programming"

    def test_assignment_prompt_and_multi_file_note(self):
        code = "// ===== a.py =====\nx = 1\n// ===== b.py =====\ny = 2\n"
        prompt = build_review_user_prompt(code, "a.py", detect_language("a.py"), "Focus on naming.")

        assert "Focus on naming." in prompt
        assert "several files concatenated" in prompt
        assert code.strip() in prompt

    def test_issue_line_must_be_integer(self):
        assert normalize_issue({"type": "error", "line": "12", "description": "d"})["line"] is None
