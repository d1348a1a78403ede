"""Unit tests for model listing."""

import asyncio

import httpx
import pytest

from src.api.model_catalog import (
    fetch_models,
    model_list_headers,
    model_list_url,
    parse_models_response,
)
from src.core.model_metadata import MetadataRule
from src.formats.unified.exceptions import HttpStatusError, UnsupportedOperationError
from tests.helpers import RecordingHandler, make_profile, make_transport


class TestModelListEndpoints:
    """Tests for per-provider URL and header selection."""

    @pytest.mark.parametrize(
        "provider_type, base_url, expected",
        [
            ("openai", "https://api.openai.com", "https://api.openai.com/v1/models"),
            ("openrouter", "https://openrouter.ai/api/v1", "https://openrouter.ai/api/v1/models"),
            ("claude", "https://api.anthropic.com", "https://api.anthropic.com/v1/models"),
            ("gemini", "https://generativelanguage.googleapis.com",
             "https://generativelanguage.googleapis.com/v1beta/models"),
            ("cohere", "", "https://api.cohere.com/v1/models"),
        ],
    )
    def test_model_list_url(self, provider_type, base_url, expected):
        assert model_list_url(make_profile(provider_type, base_url=base_url)) == expected

    def test_custom_endpoint(self):
        profile = make_profile("openai", custom_endpoints={"models": "https://models.example/list"})
        assert model_list_url(profile) == "https://models.example/list"

    def test_headers(self):
        assert model_list_headers(make_profile("openai"))["Authorization"] == "Bearer sk-test"
        claude = model_list_headers(make_profile("claude"))
        assert claude["x-api-key"] == "sk-test"
        assert "anthropic-version" in claude
        gemini = model_list_headers(make_profile("gemini", custom_headers={"X-Extra": "1"}))
        assert gemini["x-goog-api-key"] == "sk-test"
        assert gemini["X-Extra"] == "1"


class TestModelListParsing:
    """Tests for turning listings into descriptors."""

    def test_openrouter_fields(self):
        data = {"data": [{
            "id": "anthropic/claude-3-opus",
            "name": "Claude 3 Opus",
            "context_length": 200000,
            "architecture": {"input_modalities": ["text", "image"]},
            "supported_parameters": ["tools", "reasoning"],
            "pricing": {"prompt": "0.000015", "completion": "0.000075"},
            "top_provider": {"max_completion_tokens": 4096},
        }]}
        model = parse_models_response(data, "openrouter")[0]
        assert model.name == "Claude 3 Opus"
        assert model.capabilities.vision is True
        assert model.capabilities.tool_use is True
        assert model.capabilities.thinking is True
        assert model.token_limits.context_length == 200000
        assert model.token_limits.output == 4096
        assert model.pricing.prompt == "0.000015"
        assert model.group == "Claude"

    def test_gemini_listing(self):
        data = {"models": [
            {"name": "models/gemini-2.5-pro", "displayName": "Gemini 2.5 Pro",
             "supportedGenerationMethods": ["generateContent"], "inputTokenLimit": 1048576},
            {"name": "models/text-embedding-004", "supportedGenerationMethods": ["embedContent"]},
        ]}
        models = {m.id: m for m in parse_models_response(data, "gemini")}
        assert models["gemini-2.5-pro"].token_limits.context_length == 1048576
        assert models["text-embedding-004"].capabilities.embedding is True

    def test_claude_listing_skips_non_models(self):
        data = {"data": [
            {"type": "model", "id": "claude-3-5-haiku-20241022", "display_name": "Claude Haiku 3.5"},
            {"type": "other", "id": "x"},
        ]}
        models = parse_models_response(data, "claude")
        assert [m.id for m in models] == ["claude-3-5-haiku-20241022"]
        assert models[0].name == "Claude Haiku 3.5"

    def test_sorted_by_group_then_id(self):
        data = {"data": [{"id": "gpt-4o"}, {"id": "claude-3-opus"}, {"id": "gpt-3.5-turbo"}]}
        ids = [m.id for m in parse_models_response(data, "openai")]
        assert ids == ["claude-3-opus", "gpt-3.5-turbo", "gpt-4o"]

    def test_custom_rules(self):
        rules = [MetadataRule(id="r", match_type="model", match_value="house", properties={"group": "House"})]
        model = parse_models_response({"data": [{"id": "house"}]}, "openai", rules)[0]
        assert model.group == "House"


class TestFetchModels:
    """Tests for the network path."""

    def test_fetch(self):
        recording = RecordingHandler([httpx.Response(200, json={"data": [{"id": "gpt-4o", "owned_by": "openai"}]})])
        models = asyncio.run(fetch_models(make_profile("openai"), transport=make_transport(recording)))
        assert [m.id for m in models] == ["gpt-4o"]
        assert recording.last_request.method == "GET"
        assert str(recording.last_request.url) == "https://api.example.com/v1/models"

    def test_http_error_propagates(self):
        recording = RecordingHandler([httpx.Response(401, json={"error": {"message": "bad key"}})])
        with pytest.raises(HttpStatusError):
            asyncio.run(fetch_models(make_profile("openai"), transport=make_transport(recording)))

    def test_unknown_provider(self):
        with pytest.raises(UnsupportedOperationError):
            asyncio.run(fetch_models(make_profile("carrier-pigeon")))
