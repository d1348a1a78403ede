"""Unit tests for the LlmClient facade."""

import asyncio

import httpx
import pytest

from src.api.llm_client import LlmClient
from src.core.settings import LlmSettings
from src.formats.unified.exceptions import ToolCallMismatchError, UnsupportedOperationError
from src.formats.unified.types import FinishReason, ModelCapabilities, ModelDescriptor
from src.utils import token_counter
from tests.helpers import RecordingHandler, make_profile, make_transport, sse_bytes


def _openai_reply(content="pong", usage=True):
    payload = {"choices": [{"message": {"content": content}, "finish_reason": "stop"}]}
    if usage:
        payload["usage"] = {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4}
    return httpx.Response(200, json=payload)


class TestLlmClientCall:
    """Tests for routing a request through normalization and the adapter."""

    def test_call_with_option_dict(self):
        recording = RecordingHandler([_openai_reply()])
        client = LlmClient(transport=make_transport(recording))

        response = asyncio.run(client.call(make_profile("openai"), {
            "modelId": "gpt-4o",
            "messages": [{"role": "user", "content": "ping"}],
            "temperature": 0.1,
            "topK": 5,
            "custom": {"repetition_penalty": 1.1},
        }))

        assert response.content == "pong"
        assert response.finish_reason == FinishReason.STOP
        sent = recording.last_json()
        assert sent["temperature"] == 0.1
        assert "top_k" not in sent
        assert sent["repetition_penalty"] == 1.1
        assert "custom" not in sent

    def test_claude_model_through_openai_gateway(self):
        """The endpoint's wire shape is used; family-gated extras are dropped."""
        recording = RecordingHandler([_openai_reply()])
        client = LlmClient(transport=make_transport(recording))

        asyncio.run(client.call(make_profile("openrouter"), {
            "modelId": "anthropic/claude-3-5-sonnet",
            "messages": [{"role": "user", "content": "hi"}],
            "logitBias": {"50256": -100},
        }))

        assert str(recording.last_request.url).endswith("/chat/completions")
        assert "logit_bias" not in recording.last_json()

    def test_stream_call(self):
        body = sse_bytes(
            {"choices": [{"delta": {"content": "a"}}]},
            {"choices": [{"delta": {"content": "b"}, "finish_reason": "stop"}]},
            done=True,
        )
        recording = RecordingHandler([httpx.Response(200, content=body)])
        client = LlmClient(transport=make_transport(recording))
        chunks = []

        response = asyncio.run(client.call(make_profile("openai"), {
            "modelId": "gpt-4o",
            "messages": [{"role": "user", "content": "hi"}],
            "stream": True,
            "onStream": chunks.append,
        }))

        assert chunks == ["a", "b"]
        assert response.content == "ab"
        assert response.is_stream is True

    def test_model_capabilities_drop_tools(self):
        recording = RecordingHandler([_openai_reply()])
        client = LlmClient(transport=make_transport(recording))
        model = ModelDescriptor(id="gpt-4o", name="gpt-4o", provider="openai",
                                capabilities=ModelCapabilities(tool_use=False))

        asyncio.run(client.call(make_profile("openai"), {
            "modelId": "gpt-4o",
            "messages": [{"role": "user", "content": "hi"}],
            "tools": [{"type": "function", "function": {"name": "f"}}],
        }, model=model))

        assert "tools" not in recording.last_json()

    def test_unmatched_tool_result_rejected_before_sending(self):
        recording = RecordingHandler([_openai_reply()])
        client = LlmClient(transport=make_transport(recording))

        with pytest.raises(ToolCallMismatchError):
            asyncio.run(client.call(make_profile("openai"), {
                "modelId": "gpt-4o",
                "messages": [{"role": "user", "content": [
                    {"type": "tool_result", "tool_use_id": "call_404", "content": "x"},
                ]}],
            }))
        assert recording.requests == []

    def test_missing_usage_estimated_when_enabled(self, monkeypatch):
        monkeypatch.setattr(token_counter, "estimate_tokens", lambda text, model_id="": len((text or "").split()))
        recording = RecordingHandler([_openai_reply("one two", usage=False)])
        client = LlmClient(transport=make_transport(recording), settings=LlmSettings(estimate_missing_usage=True))

        response = asyncio.run(client.call(make_profile("openai"), {
            "modelId": "gpt-4o",
            "messages": [{"role": "user", "content": "hi"}],
        }))

        assert response.usage.estimated is True
        assert response.usage.completion_tokens == 2


class TestLlmClientOtherOperations:
    """Tests for listing, counting and embeddings."""

    def test_list_models(self):
        recording = RecordingHandler([httpx.Response(200, json={"data": [{"id": "gpt-4o"}]})])
        client = LlmClient(transport=make_transport(recording))
        models = asyncio.run(client.list_models(make_profile("openai")))
        assert models[0].group == "OpenAI"

    def test_count_tokens(self, monkeypatch):
        monkeypatch.setattr(token_counter, "estimate_tokens", lambda text, model_id="": len((text or "").split()))
        client = LlmClient(transport=make_transport(RecordingHandler()))
        count = client.count_tokens({"modelId": "gpt-4o", "messages": [{"role": "user", "content": "a b c"}]})
        assert count == 3 + token_counter.MESSAGE_OVERHEAD_TOKENS

    def test_embed_wraps_single_input(self):
        recording = RecordingHandler([httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0, 2.0]}]})])
        client = LlmClient(transport=make_transport(recording))
        vectors = asyncio.run(client.embed(make_profile("openai"), "text-embedding-3-small", "hello"))
        assert vectors == [[1.0, 2.0]]
        assert recording.last_json()["input"] == ["hello"]

    @pytest.mark.parametrize("provider_type", ["claude", "gemini", "unknown-provider"])
    def test_embed_unsupported_before_network(self, provider_type):
        recording = RecordingHandler()
        client = LlmClient(transport=make_transport(recording))
        with pytest.raises(UnsupportedOperationError):
            asyncio.run(client.embed(make_profile(provider_type), "m", ["x"]))
        assert recording.requests == []
