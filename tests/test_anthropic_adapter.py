"""Unit tests for the Anthropic Messages adapter.

Covers body construction, SSE event parsing with tool_use defragmentation,
and final response parsing.
"""

import asyncio
import json

import httpx
import pytest

from src.formats.anthropic_adapter import (
    ANTHROPIC_VERSION,
    INTERLEAVED_THINKING_BETA,
    AnthropicAdapter,
    build_claude_body,
)
from src.formats.capabilities import ModelFamily
from src.formats.normalizer import FilteredRequest
from src.formats.unified.exceptions import DecodeError
from src.formats.unified.stream_state import StreamAccumulator
from src.formats.unified.types import (
    ContentBlock,
    FinishReason,
    Message,
    Role,
    ToolChoice,
    ToolDefinition,
    UnifiedRequest,
)
from tests.helpers import RecordingHandler, make_profile, make_transport, sse_bytes


def _request(messages=None, **kwargs):
    messages = messages or [Message(role=Role.USER, content="hi")]
    return UnifiedRequest(model_id="claude-3-5-sonnet-20241022", messages=messages, **kwargs)


def _filtered(request, **profile_kwargs):
    return FilteredRequest(
        request=request,
        profile=make_profile("claude", base_url="https://api.anthropic.com", **profile_kwargs),
        family=ModelFamily.CLAUDE,
    )


class TestClaudeRequestBuilding:
    """Tests for the Messages API body and headers."""

    def test_url_and_headers(self):
        adapter = AnthropicAdapter()
        filtered = _filtered(_request())
        assert adapter.build_url(filtered) == "https://api.anthropic.com/v1/messages"
        headers = adapter.request_headers(filtered)
        assert headers["x-api-key"] == "sk-test"
        assert headers["anthropic-version"] == ANTHROPIC_VERSION

    def test_system_messages_hoisted(self):
        messages = [
            Message(role=Role.SYSTEM, content="Be brief."),
            Message(role=Role.SYSTEM, content="Be kind."),
            Message(role=Role.USER, content="hi"),
        ]
        body = build_claude_body(_request(messages))
        assert body["system"] == "Be brief.\n\nBe kind."
        assert body["messages"] == [{"role": "user", "content": "hi"}]
        assert body["max_tokens"] == 4096

    def test_stop_merged_into_stop_sequences(self):
        body = build_claude_body(_request(stop_sequences=["END"], stop="STOP"))
        assert body["stop_sequences"] == ["END", "STOP"]

    def test_thinking_removes_temperature(self):
        body = build_claude_body(_request(thinking_enabled=True, thinking_budget=2048, temperature=0.7))
        assert body["thinking"] == {"type": "enabled", "budget_tokens": 2048}
        assert "temperature" not in body

    def test_default_max_tokens_exceeds_thinking_budget(self):
        """Thinking with no explicit limits still leaves room above the budget."""
        body = build_claude_body(_request(thinking_enabled=True))
        assert body["thinking"]["budget_tokens"] == 4096
        assert body["max_tokens"] > body["thinking"]["budget_tokens"]

    def test_max_tokens_kept_when_above_budget(self):
        body = build_claude_body(_request(thinking_enabled=True, thinking_budget=1024, max_tokens=2000))
        assert body["max_tokens"] == 2000

    def test_tools_and_choice(self):
        request = _request(
            tools=[ToolDefinition(name="lookup", parameters={"type": "object", "properties": {}})],
            tool_choice=ToolChoice(mode="required"),
            parallel_tool_calls=False,
        )
        body = build_claude_body(request)
        assert body["tools"] == [{"name": "lookup", "description": "", "input_schema": {"type": "object", "properties": {}}}]
        assert body["tool_choice"] == {"type": "any", "disable_parallel_tool_use": True}

    def test_interleaved_thinking_beta_with_tools(self):
        request = _request(thinking_enabled=True, tools=[ToolDefinition(name="lookup")])
        headers = AnthropicAdapter().request_headers(_filtered(request))
        assert headers["anthropic-beta"].startswith(INTERLEAVED_THINKING_BETA)

    def test_media_blocks_and_cache_control(self):
        message = Message(role=Role.USER, content=[
            ContentBlock.image_block("aGVsbG8=", "image/jpeg"),
            ContentBlock.document_block(url="https://example.com/a.pdf"),
            ContentBlock.text_block("summarize", cache_control={"type": "ephemeral"}),
        ])
        content = build_claude_body(_request([message]))["messages"][0]["content"]
        assert content[0]["source"] == {"type": "base64", "media_type": "image/jpeg", "data": "aGVsbG8="}
        assert content[1]["source"] == {"type": "url", "url": "https://example.com/a.pdf"}
        assert content[2]["cache_control"] == {"type": "ephemeral"}


class TestClaudeStreamParsing:
    """Tests for SSE event handling."""

    def test_tool_use_fragments_yield_one_call(self):
        """content_block_start + two input_json_delta + content_block_stop is one tool call."""
        adapter = AnthropicAdapter()
        acc = StreamAccumulator()
        events = [
            {"type": "message_start", "message": {"usage": {"input_tokens": 20, "output_tokens": 1}}},
            {"type": "content_block_start", "index": 0,
             "content_block": {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {}}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "input_json_delta", "partial_json": '{"city": "Pa'}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "input_json_delta", "partial_json": 'ris"}'}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 15}},
            {"type": "message_stop"},
        ]
        for event in events:
            adapter.parse_stream_event(json.dumps(event), acc)
        response = adapter.finish_stream(acc)

        assert len(response.tool_calls) == 1
        call = response.tool_calls[0]
        assert call.id == "toolu_1"
        assert call.name == "get_weather"
        assert call.arguments_text == '{"city": "Pa' + 'ris"}'
        assert response.finish_reason == FinishReason.TOOL_CALLS
        assert response.usage.prompt_tokens == 20
        assert response.usage.completion_tokens == 15

    def test_stream_through_transport(self):
        body = sse_bytes(
            {"type": "message_start", "message": {"usage": {"input_tokens": 5}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "thinking", "thinking": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "plan"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "content_block_start", "index": 1, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "text_delta", "text": "Hello"}},
            {"type": "content_block_stop", "index": 1},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 3}},
            {"type": "message_stop"},
        )
        recording = RecordingHandler([httpx.Response(200, content=body)])
        adapter = AnthropicAdapter(transport=make_transport(recording))

        response = asyncio.run(adapter.execute(_filtered(_request(stream=True))))

        assert response.content == "Hello"
        assert response.reasoning_content == "plan"
        assert response.finish_reason == FinishReason.END_TURN
        assert recording.last_json()["stream"] is True

    def test_error_event_raises_with_partial(self):
        body = sse_bytes(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "par"}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )
        recording = RecordingHandler([httpx.Response(200, content=body)])
        adapter = AnthropicAdapter(transport=make_transport(recording))

        with pytest.raises(DecodeError) as exc_info:
            asyncio.run(adapter.execute(_filtered(_request(stream=True))))
        assert "Overloaded" in str(exc_info.value)
        assert exc_info.value.partial_response.content == "par"


class TestClaudeFinalParsing:
    """Tests for non-streaming responses."""

    def test_parse_final(self):
        raw = {
            "model": "claude-3-5-sonnet-20241022",
            "content": [
                {"type": "thinking", "thinking": "hmm"},
                {"type": "text", "text": "Answer"},
                {"type": "tool_use", "id": "toolu_2", "name": "f", "input": {"a": 1}},
            ],
            "stop_reason": "stop_sequence",
            "stop_sequence": "END",
            "usage": {"input_tokens": 10, "output_tokens": 4, "cache_read_input_tokens": 6},
        }
        response = AnthropicAdapter().parse_final(raw)
        assert response.content == "Answer"
        assert response.reasoning_content == "hmm"
        assert response.tool_calls[0].arguments_text == '{"a": 1}'
        assert response.finish_reason == FinishReason.STOP_SEQUENCE
        assert response.stop_sequence == "END"
        assert response.usage.cached_tokens == 6

    def test_refusal_maps_to_content_filter(self):
        response = AnthropicAdapter().parse_final({"content": [], "stop_reason": "refusal"})
        assert response.finish_reason == FinishReason.CONTENT_FILTER

    def test_missing_content_is_decode_error(self):
        with pytest.raises(DecodeError):
            AnthropicAdapter().parse_final({"type": "error"})
