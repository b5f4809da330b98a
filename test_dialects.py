#!/usr/bin/env python3
"""
Tests for dialect parsing of streaming and non-streaming payloads.
"""

import json

import pytest

from streamchat.llm.streaming.dialects import (
    extract_delta_text,
    is_stream_finished,
    parse_complete_response,
    parse_payload,
)
from streamchat.llm.streaming.models import PARSE_SKIP, ParsedDelta, ParseSkip


class TestParsePayload:
    """Streaming payloads."""

    def test_done_sentinel(self):
        assert parse_payload("[DONE]") == ParsedDelta("", True)

    def test_empty_payload_is_skipped(self):
        assert parse_payload("") is PARSE_SKIP

    def test_openai_delta(self):
        payload = json.dumps({"choices": [{"delta": {"content": "Hi"}}]})
        assert parse_payload(payload) == ParsedDelta("Hi", False)

    def test_openai_finish_reason(self):
        payload = json.dumps(
            {"choices": [{"delta": {"content": "!"}, "finish_reason": "stop"}]}
        )
        assert parse_payload(payload) == ParsedDelta("!", True)

    def test_finish_reason_string_null_is_not_finished(self):
        payload = json.dumps({"choices": [{"delta": {}, "finish_reason": "null"}]})
        assert parse_payload(payload) == ParsedDelta("", False)

    def test_finish_reason_json_null_is_not_finished(self):
        payload = json.dumps({"choices": [{"delta": {"content": "a"}, "finish_reason": None}]})
        assert parse_payload(payload) == ParsedDelta("a", False)

    def test_top_level_finish_reason(self):
        assert parse_payload('{"finish_reason":"length"}') == ParsedDelta("", True)

    def test_ollama_message_and_done(self):
        assert parse_payload('{"message":{"content":"x"},"done":true}') == ParsedDelta("x", True)

    def test_ollama_not_done(self):
        assert parse_payload('{"message":{"content":"x"},"done":false}') == ParsedDelta("x", False)

    def test_openai_text_takes_priority(self):
        payload = json.dumps({
            "choices": [{"delta": {"content": "a"}}],
            "message": {"content": "b"},
        })
        assert parse_payload(payload).text == "a"

    def test_malformed_object_is_skipped(self):
        result = parse_payload('{"choices":[')
        assert isinstance(result, ParseSkip)
        assert not result

    def test_non_json_is_literal_text(self):
        assert parse_payload("plain words") == ParsedDelta("plain words", False)

    @pytest.mark.parametrize("payload", ["42", "[1, 2]", '"text"', "null"])
    def test_valid_non_object_json(self, payload):
        assert parse_payload(payload) == ParsedDelta("", False)

    def test_unknown_shape(self):
        assert parse_payload('{"usage":{"total_tokens":3}}') == ParsedDelta("", False)


class TestFieldProbes:
    """Individual field lookups."""

    def test_delta_text_ignores_non_string_content(self):
        assert extract_delta_text({"choices": [{"delta": {"content": 5}}]}) == ""

    def test_empty_choices(self):
        assert extract_delta_text({"choices": []}) == ""
        assert is_stream_finished({"choices": []}) is False

    def test_done_must_be_true(self):
        assert is_stream_finished({"done": "yes"}) is False


class TestParseCompleteResponse:
    """Non-streaming bodies."""

    def test_openai_body(self):
        body = json.dumps({"choices": [{"message": {"content": "Title"}}]})
        assert parse_complete_response(body) == "Title"

    def test_ollama_body(self):
        assert parse_complete_response('{"message":{"content":"Title"}}') == "Title"

    def test_plain_text_body(self):
        assert parse_complete_response("just text") == "just text"

    def test_broken_json_body(self):
        assert parse_complete_response('{"message":') == ""
