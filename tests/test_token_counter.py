"""Unit tests for local token estimation.

The tiktoken encoding is replaced with a whitespace tokenizer so the tests do
not depend on downloading encoding files.
"""

import pytest

from src.formats.unified.types import ContentBlock, ContentBlockType, Message, Role, ToolDefinition, UnifiedRequest
from src.utils import token_counter


class _WhitespaceEncoding:
    def encode(self, text, disallowed_special=()):
        return text.split()


@pytest.fixture
def whitespace_encoding(monkeypatch):
    monkeypatch.setattr(token_counter, "_get_encoding", lambda model_id: _WhitespaceEncoding())


class TestEstimateTokens:
    """Tests for single-text estimation."""

    def test_empty_text(self, whitespace_encoding):
        assert token_counter.estimate_tokens("") == 0
        assert token_counter.estimate_tokens(None) == 0

    def test_uses_encoding(self, whitespace_encoding):
        assert token_counter.estimate_tokens("one two three", "gpt-4o") == 3

    def test_falls_back_to_characters(self, monkeypatch):
        def broken(model_id):
            raise OSError("no network")

        monkeypatch.setattr(token_counter, "_get_encoding", broken)
        assert token_counter.estimate_tokens("x" * 40) == 10


class TestEstimateRequestTokens:
    """Tests for whole-request estimation."""

    def test_text_media_and_overhead(self, whitespace_encoding):
        request = UnifiedRequest(model_id="gpt-4o", messages=[
            Message(role=Role.SYSTEM, content="be brief"),
            Message(role=Role.USER, content=[
                ContentBlock.text_block("what is this"),
                ContentBlock.image_block("aGVsbG8=", "image/png"),
            ]),
        ])
        expected = 5 + 2 * token_counter.MESSAGE_OVERHEAD_TOKENS + token_counter.MEDIA_BLOCK_TOKENS[ContentBlockType.IMAGE]
        assert token_counter.estimate_request_tokens(request) == expected

    def test_tools_counted(self, whitespace_encoding):
        base = UnifiedRequest(model_id="m", messages=[Message(role=Role.USER, content="hi")])
        with_tools = base.with_changes(tools=[ToolDefinition(name="lookup", description="find a thing")])
        assert token_counter.estimate_request_tokens(with_tools) > token_counter.estimate_request_tokens(base)

    def test_estimate_usage_is_flagged(self, whitespace_encoding):
        request = UnifiedRequest(model_id="m", messages=[Message(role=Role.USER, content="hello there")])
        usage = token_counter.estimate_usage(request, "general kenobi", "think")
        assert usage.estimated is True
        assert usage.completion_tokens == 3
        assert usage.prompt_tokens == 2 + token_counter.MESSAGE_OVERHEAD_TOKENS
        assert usage.total_tokens == usage.prompt_tokens + usage.completion_tokens
