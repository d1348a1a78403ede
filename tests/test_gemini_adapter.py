"""Unit tests for the Gemini generateContent adapter."""

import asyncio
import json

import httpx
import pytest

from src.formats.capabilities import ModelFamily
from src.formats.gemini_adapter import (
    DEFAULT_SAFETY_SETTINGS,
    GeminiAdapter,
    build_gemini_body,
    build_gemini_contents,
    merge_safety_settings,
)
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


def _request(messages=None, model_id="gemini-2.5-flash", **kwargs):
    messages = messages or [Message(role=Role.USER, content="hi")]
    return UnifiedRequest(model_id=model_id, messages=messages, **kwargs)


def _filtered(request):
    return FilteredRequest(
        request=request,
        profile=make_profile("gemini", base_url="https://generativelanguage.googleapis.com"),
        family=ModelFamily.GEMINI,
    )


class TestGeminiRequestBuilding:
    """Tests for URL, headers and body."""

    def test_urls(self):
        adapter = GeminiAdapter()
        assert adapter.build_url(_filtered(_request())) == (
            "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:generateContent"
        )
        assert adapter.build_url(_filtered(_request(stream=True))) == (
            "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:streamGenerateContent?alt=sse"
        )
        assert adapter.build_headers(make_profile("gemini"))["x-goog-api-key"] == "sk-test"

    def test_contents_and_system_instruction(self):
        messages = [
            Message(role=Role.SYSTEM, content="Be brief."),
            Message(role=Role.USER, content=[
                ContentBlock.text_block("describe"),
                ContentBlock.image_block("aGVsbG8=", "image/png"),
            ]),
            Message(role=Role.ASSISTANT, content="ok"),
        ]
        body = build_gemini_body(_request(messages))
        assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        assert body["contents"][0]["parts"] == [
            {"text": "describe"},
            {"inlineData": {"mimeType": "image/png", "data": "aGVsbG8="}},
        ]
        assert body["contents"][1] == {"role": "model", "parts": [{"text": "ok"}]}

    def test_generation_config(self):
        request = _request(
            max_tokens=256,
            temperature=0.2,
            top_k=32,
            stop="END",
            response_format={
                "type": "json_schema",
                "json_schema": {"schema": {"type": "object", "additionalProperties": False,
                                           "properties": {"a": {"type": "string"}}}},
            },
        )
        config = build_gemini_body(request)["generationConfig"]
        assert config["maxOutputTokens"] == 256
        assert config["temperature"] == 0.2
        assert config["topK"] == 32
        assert config["stopSequences"] == ["END"]
        assert config["responseMimeType"] == "application/json"
        assert config["responseSchema"] == {"type": "OBJECT", "properties": {"a": {"type": "STRING"}}}

    def test_thinking_config_by_generation(self):
        config = build_gemini_body(_request(thinking_budget=1024, include_thoughts=True))["generationConfig"]
        assert config["thinkingConfig"] == {"includeThoughts": True, "thinkingBudget": 1024}

        config = build_gemini_body(_request(model_id="gemini-3-pro", reasoning_effort="high"))["generationConfig"]
        assert config["thinkingConfig"] == {"thinkingLevel": "high"}

    def test_tools_and_tool_config(self):
        request = _request(
            tools=[ToolDefinition(name="lookup", parameters={"type": "object", "$schema": "x", "properties": {}})],
            tool_choice=ToolChoice(mode="function", function_name="lookup"),
            enable_code_execution=True,
        )
        body = build_gemini_body(request)
        declaration = body["tools"][0]["functionDeclarations"][0]
        assert declaration["parameters"] == {"type": "object", "properties": {}}
        assert body["tools"][1] == {"codeExecution": {}}
        assert body["toolConfig"] == {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": ["lookup"]}}

    def test_function_response_named_after_matching_call(self):
        """A tool result without a name takes the function name of the call it answers."""
        contents = build_gemini_contents([
            Message(role=Role.USER, content="weather?"),
            Message(role=Role.ASSISTANT, content=[ContentBlock.tool_use_block("call_1", "lookup", {"q": "x"})]),
            Message(role=Role.USER, content=[ContentBlock.tool_result_block("call_1", "sunny")]),
        ])
        assert contents[1]["parts"][0]["functionCall"]["name"] == "lookup"
        assert contents[2]["parts"][0]["functionResponse"] == {"name": "lookup", "response": {"result": "sunny"}}

    def test_function_response_keeps_explicit_name(self):
        contents = build_gemini_contents([
            Message(role=Role.ASSISTANT, content=[ContentBlock.tool_use_block("call_1", "lookup")]),
            Message(role=Role.USER, content=[ContentBlock.tool_result_block("call_1", "ok", tool_name="search")]),
        ])
        assert contents[1]["parts"][0]["functionResponse"]["name"] == "search"

    def test_safety_settings_merged_by_category(self):
        merged = merge_safety_settings([{"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_LOW_AND_ABOVE"}])
        assert len(merged) == len(DEFAULT_SAFETY_SETTINGS)
        assert {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_LOW_AND_ABOVE"} in merged


class TestGeminiResponseParsing:
    """Tests for final and streamed payloads."""

    def test_safety_finish_maps_to_content_filter(self):
        """A terminal SAFETY finish reason is content_filter."""
        adapter = GeminiAdapter()
        acc = StreamAccumulator()
        adapter.parse_stream_event(json.dumps({
            "candidates": [{"content": {"parts": [{"text": "Partial"}]}}],
        }), acc)
        adapter.parse_stream_event(json.dumps({
            "candidates": [{"content": {"parts": []}, "finishReason": "SAFETY"}],
            "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 1, "totalTokenCount": 5},
        }), acc)
        response = adapter.finish_stream(acc)
        assert response.finish_reason == FinishReason.CONTENT_FILTER
        assert response.content == "Partial"
        assert response.usage.total_tokens == 5

    def test_stream_thoughts_and_function_calls(self):
        body = sse_bytes(
            {"candidates": [{"content": {"parts": [{"text": "planning", "thought": True}]}}]},
            {"candidates": [{"content": {"parts": [
                {"functionCall": {"name": "lookup", "args": {"q": "x"}}},
            ]}, "finishReason": "STOP"}]},
        )
        recording = RecordingHandler([httpx.Response(200, content=body)])
        adapter = GeminiAdapter(transport=make_transport(recording))

        response = asyncio.run(adapter.execute(_filtered(_request(stream=True))))

        assert response.reasoning_content == "planning"
        assert response.tool_calls[0].name == "lookup"
        assert json.loads(response.tool_calls[0].arguments_text) == {"q": "x"}
        assert response.tool_calls[0].id.startswith("call_")
        assert response.finish_reason == FinishReason.STOP

    def test_parse_final_with_grounding(self):
        raw = {
            "candidates": [{
                "content": {"parts": [{"text": "Paris"}]},
                "finishReason": "MAX_TOKENS",
                "groundingMetadata": {"groundingChunks": [{"web": {"uri": "https://a.example", "title": "A"}}]},
            }],
            "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 2, "thoughtsTokenCount": 7},
            "modelVersion": "gemini-2.5-flash",
        }
        response = GeminiAdapter().parse_final(raw)
        assert response.content == "Paris"
        assert response.finish_reason == FinishReason.MAX_TOKENS
        assert response.usage.reasoning_tokens == 7
        assert response.annotations[0]["urlCitation"]["url"] == "https://a.example"
        assert response.model == "gemini-2.5-flash"

    def test_blocked_prompt_is_decode_error(self):
        with pytest.raises(DecodeError) as exc_info:
            GeminiAdapter().parse_final({"promptFeedback": {"blockReason": "SAFETY"}})
        assert "SAFETY" in str(exc_info.value)

    def test_code_execution_parts_rendered(self):
        raw = {"candidates": [{"content": {"parts": [
            {"executableCode": {"language": "PYTHON", "code": "print(1)"}},
            {"codeExecutionResult": {"outcome": "OUTCOME_OK", "output": "1"}},
        ]}, "finishReason": "STOP"}]}
        content = GeminiAdapter().parse_final(raw).content
        assert "```python\nprint(1)\n```" in content
        assert "Code execution result (ok)" in content
