"""Unit tests for the OpenAI Responses API adapter."""

import asyncio

import httpx
import pytest

from src.formats.capabilities import ModelFamily
from src.formats.normalizer import FilteredRequest
from src.formats.openai_responses_adapter import OpenAIResponsesAdapter, build_input
from src.formats.unified.exceptions import DecodeError
from src.formats.unified.types import (
    ContentBlock,
    FinishReason,
    Message,
    Role,
    ToolDefinition,
    UnifiedRequest,
)
from tests.helpers import RecordingHandler, make_profile, make_transport, sse_bytes


def _request(messages=None, **kwargs):
    messages = messages or [Message(role=Role.USER, content="hi")]
    return UnifiedRequest(model_id="gpt-4.1", messages=messages, **kwargs)


def _filtered(request):
    return FilteredRequest(request=request, profile=make_profile("openai-responses"), family=ModelFamily.OPENAI)


class TestResponsesRequestBuilding:
    """Tests for the input array and body."""

    def test_single_user_message_is_string(self):
        assert build_input([Message(role=Role.USER, content="hi")]) == "hi"

    def test_multi_turn_input(self):
        messages = [
            Message(role=Role.SYSTEM, content="sys"),
            Message(role=Role.USER, content=[ContentBlock.text_block("look"),
                                             ContentBlock.image_block("aGVsbG8=", "image/png")]),
            Message(role=Role.ASSISTANT, content=[ContentBlock.tool_use_block("call_1", "f", {"a": 1})]),
            Message(role=Role.USER, content=[ContentBlock.tool_result_block("call_1", "done")]),
        ]
        items = build_input(messages)
        assert items[0] == {"role": "user", "content": [
            {"type": "input_text", "text": "look"},
            {"type": "input_image", "image_url": "data:image/png;base64,aGVsbG8="},
        ]}
        assert items[1] == {"type": "function_call", "call_id": "call_1", "name": "f", "arguments": '{"a": 1}'}
        assert items[2] == {"type": "function_call_output", "call_id": "call_1", "output": "done"}

    def test_body(self):
        messages = [Message(role=Role.SYSTEM, content="Be brief."), Message(role=Role.USER, content="hi")]
        request = _request(
            messages,
            max_tokens=300,
            reasoning_effort="low",
            tools=[ToolDefinition(name="lookup", description="Find")],
            response_format={"type": "json_object"},
        )
        adapter = OpenAIResponsesAdapter()
        filtered = _filtered(request)
        body = adapter.build_body(filtered)
        assert adapter.build_url(filtered) == "https://api.example.com/v1/responses"
        assert body["instructions"] == "Be brief."
        assert body["input"] == "hi"
        assert body["max_output_tokens"] == 300
        assert body["reasoning"] == {"effort": "low"}
        assert body["tools"] == [{"type": "function", "name": "lookup", "description": "Find",
                                  "parameters": {"type": "object", "properties": {}}}]
        assert body["text"] == {"format": {"type": "json_object"}}


class TestResponsesParsing:
    """Tests for semantic stream events and final payloads."""

    def test_stream_events(self):
        body = sse_bytes(
            {"type": "response.created", "response": {"status": "in_progress"}},
            {"type": "response.reasoning_summary_text.delta", "delta": "why"},
            {"type": "response.output_text.delta", "delta": "Hel"},
            {"type": "response.output_text.delta", "delta": "lo"},
            {"type": "response.output_item.added",
             "item": {"type": "function_call", "id": "fc_1", "call_id": "call_1", "name": "lookup", "arguments": ""}},
            {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": '{"q"'},
            {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": ': 2}'},
            {"type": "response.function_call_arguments.done", "item_id": "fc_1", "arguments": '{"q": 2}'},
            {"type": "response.completed", "response": {
                "status": "completed",
                "output": [{"type": "function_call", "id": "fc_1", "call_id": "call_1",
                            "name": "lookup", "arguments": '{"q": 2}'}],
                "usage": {"input_tokens": 9, "output_tokens": 4, "total_tokens": 13},
            }},
        )
        recording = RecordingHandler([httpx.Response(200, content=body)])
        adapter = OpenAIResponsesAdapter(transport=make_transport(recording))

        response = asyncio.run(adapter.execute(_filtered(_request(stream=True))))

        assert response.content == "Hello"
        assert response.reasoning_content == "why"
        assert len(response.tool_calls) == 1
        assert response.tool_calls[0].id == "call_1"
        assert response.tool_calls[0].arguments_text == '{"q": 2}'
        assert response.finish_reason == FinishReason.TOOL_CALLS
        assert response.usage.total_tokens == 13

    def test_failed_event_raises(self):
        body = sse_bytes({"type": "response.failed", "response": {"error": {"message": "server_error"}}})
        recording = RecordingHandler([httpx.Response(200, content=body)])
        adapter = OpenAIResponsesAdapter(transport=make_transport(recording))
        with pytest.raises(DecodeError) as exc_info:
            asyncio.run(adapter.execute(_filtered(_request(stream=True))))
        assert "server_error" in str(exc_info.value)

    def test_parse_final(self):
        raw = {
            "model": "gpt-4.1",
            "status": "incomplete",
            "output": [
                {"type": "reasoning", "summary": [{"type": "summary_text", "text": "thought"}]},
                {"type": "message", "content": [{
                    "type": "output_text",
                    "text": "Answer",
                    "annotations": [{"type": "url_citation", "url": "https://x.example", "title": "X",
                                     "start_index": 0, "end_index": 6}],
                }]},
            ],
            "usage": {"input_tokens": 1, "output_tokens": 2, "output_tokens_details": {"reasoning_tokens": 1}},
        }
        response = OpenAIResponsesAdapter().parse_final(raw)
        assert response.content == "Answer"
        assert response.reasoning_content == "thought"
        assert response.finish_reason == FinishReason.LENGTH
        assert response.annotations[0]["urlCitation"]["url"] == "https://x.example"
        assert response.usage.reasoning_tokens == 1

    def test_parse_final_without_output(self):
        with pytest.raises(DecodeError):
            OpenAIResponsesAdapter().parse_final({"id": "resp_1"})
