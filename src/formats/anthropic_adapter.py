"""
Anthropic Claude 适配器
Messages API：请求构建、SSE 事件解析、最终响应解析
"""

import json
from typing import Any, Dict, List, Optional

from src.formats.normalizer import FilteredRequest, apply_extensions, clean_payload
from src.formats.unified.adapters import BaseProviderAdapter, build_versioned_url
from src.formats.unified.exceptions import DecodeError
from src.formats.unified.stream_state import StreamAccumulator
from src.formats.unified.types import (
    ContentBlock,
    ContentBlockType,
    FinishReason,
    Message,
    Profile,
    Role,
    ToolCall,
    UnifiedRequest,
    UnifiedResponse,
    Usage,
)
from src.utils.logger import setup_logger

logger = setup_logger("anthropic_adapter")

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_THINKING_BUDGET = 4096

FILES_API_BETA = "files-api-2025-04-14"
INTERLEAVED_THINKING_BETA = "interleaved-thinking-2025-05-14"

CLAUDE_FINISH_REASONS = {
    "end_turn": FinishReason.END_TURN,
    "max_tokens": FinishReason.MAX_TOKENS,
    "stop_sequence": FinishReason.STOP_SEQUENCE,
    "tool_use": FinishReason.TOOL_CALLS,
    "refusal": FinishReason.CONTENT_FILTER,
}


def parse_claude_usage(raw: Optional[Dict[str, Any]], previous: Optional[Usage] = None) -> Optional[Usage]:
    """input/output tokens; message_delta 只带 output_tokens，input 沿用 message_start 的值"""
    if not raw:
        return None
    prompt = raw.get("input_tokens")
    if prompt is None and previous is not None:
        prompt = previous.prompt_tokens
    cached = raw.get("cache_read_input_tokens")
    if cached is None and previous is not None:
        cached = previous.cached_tokens
    return Usage.of(prompt, raw.get("output_tokens"), cached_tokens=cached)


def _convert_block(block: ContentBlock) -> Optional[Dict[str, Any]]:
    if block.type == ContentBlockType.TEXT:
        item: Dict[str, Any] = {"type": "text", "text": block.text or ""}
    elif block.type == ContentBlockType.IMAGE:
        if block.url and not block.data:
            source = {"type": "url", "url": block.url}
        else:
            source = {"type": "base64", "media_type": block.mime_type or "image/png", "data": block.data or ""}
        item = {"type": "image", "source": source}
    elif block.type == ContentBlockType.DOCUMENT:
        if block.data:
            source = {"type": "base64", "media_type": block.mime_type or "application/pdf", "data": block.data}
        elif block.url:
            source = {"type": "url", "url": block.url}
        else:
            return None
        item = {"type": "document", "source": source}
    elif block.type == ContentBlockType.TOOL_USE:
        item = {
            "type": "tool_use",
            "id": block.tool_use_id,
            "name": block.tool_name,
            "input": block.tool_input or {},
        }
    elif block.type == ContentBlockType.TOOL_RESULT:
        content = block.tool_result_content
        if isinstance(content, list):
            content = [c for c in (_convert_block(b) for b in content) if c is not None]
        item = {"type": "tool_result", "tool_use_id": block.tool_result_id, "content": content or ""}
        if block.is_error:
            item["is_error"] = True
    else:
        logger.warning(f"Claude does not accept {block.type.value} content blocks, skipped")
        return None

    if block.cache_control:
        item["cache_control"] = block.cache_control
    return item


def convert_claude_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    """system 消息由调用方单独处理，其余角色映射为 user / assistant"""
    result = []
    for message in messages:
        if message.role == Role.SYSTEM:
            continue
        role = "assistant" if message.role == Role.ASSISTANT else "user"
        if isinstance(message.content, str):
            content: Any = message.content
        else:
            content = [c for c in (_convert_block(b) for b in message.content) if c is not None]
        result.append({"role": role, "content": content})
    return result


def system_prompt(messages: List[Message]) -> Optional[str]:
    parts = [m.text() for m in messages if m.role == Role.SYSTEM]
    return "\n\n".join(parts) if parts else None


def build_claude_body(request: UnifiedRequest, extensions: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Messages API body shared by the direct API and the VertexAI gateway."""
    body: Dict[str, Any] = {
        "model": request.model_id,
        "messages": convert_claude_messages(request.messages),
        "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
    }

    for key, value in (
        ("temperature", request.temperature),
        ("top_k", request.top_k),
        ("top_p", request.top_p),
        ("system", system_prompt(request.messages)),
    ):
        if value is not None:
            body[key] = value

    stop_sequences = list(request.stop_sequences or [])
    if request.stop:
        stop_sequences.extend([request.stop] if isinstance(request.stop, str) else request.stop)
    if stop_sequences:
        body["stop_sequences"] = stop_sequences
    if request.claude_metadata:
        body["metadata"] = request.claude_metadata

    if request.thinking_enabled:
        budget = request.thinking_budget or DEFAULT_THINKING_BUDGET
        body["thinking"] = {"type": "enabled", "budget_tokens": budget}
        # budget_tokens 必须小于 max_tokens，否则上游直接拒绝
        if body["max_tokens"] <= budget:
            logger.debug(f"max_tokens {body['max_tokens']} does not exceed thinking budget {budget}, raising it")
            body["max_tokens"] = budget + DEFAULT_MAX_TOKENS
        # 开启 thinking 时不允许设置 temperature
        body.pop("temperature", None)

    if request.tools:
        body["tools"] = [
            {
                "name": tool.name,
                "description": tool.description or "",
                "input_schema": tool.schema(),
            }
            for tool in request.tools
        ]
        tool_choice = _tool_choice(request)
        if tool_choice is not None:
            body["tool_choice"] = tool_choice

    if request.stream:
        body["stream"] = True

    apply_extensions(body, extensions)
    return clean_payload(body)


def _tool_choice(request: UnifiedRequest) -> Optional[Dict[str, Any]]:
    choice = request.tool_choice
    if choice is None:
        return None
    if choice.mode == "none":
        return {"type": "none"}
    if choice.mode == "required":
        result: Dict[str, Any] = {"type": "any"}
    elif choice.mode == "function" and choice.function_name:
        result = {"type": "tool", "name": choice.function_name}
    else:
        result = {"type": "auto"}
    if request.parallel_tool_calls is False:
        result["disable_parallel_tool_use"] = True
    return result


class AnthropicAdapter(BaseProviderAdapter):
    """Anthropic Messages API adapter."""

    provider_type = "claude"
    # Claude 事件流没有 [DONE]，以 message_stop 收尾
    done_sentinel = None
    finish_reason_map = CLAUDE_FINISH_REASONS

    def build_url(self, filtered: FilteredRequest) -> str:
        endpoint = self.endpoint_for(filtered.profile, "chat", "messages")
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return build_versioned_url(filtered.profile.base_url, endpoint, markers=("/v1",))

    def build_headers(self, profile: Profile) -> Dict[str, str]:
        return self.merged_headers(
            profile,
            {
                "x-api-key": profile.primary_key(),
                "anthropic-version": ANTHROPIC_VERSION,
                "anthropic-beta": FILES_API_BETA,
            },
        )

    def request_headers(self, filtered: FilteredRequest) -> Dict[str, str]:
        headers = self.build_headers(filtered.profile)
        request = filtered.request
        if request.thinking_enabled and request.tools and "anthropic-beta" not in (filtered.profile.custom_headers or {}):
            headers["anthropic-beta"] = f"{INTERLEAVED_THINKING_BETA},{FILES_API_BETA}"
        return headers

    def build_body(self, filtered: FilteredRequest) -> Dict[str, Any]:
        return build_claude_body(filtered.request, filtered.extensions)

    def parse_stream_event(self, payload: str, accumulator: StreamAccumulator) -> None:
        event = self.load_event(payload)
        if event is None:
            return

        event_type = event.get("type")
        if event_type == "message_start":
            message = event.get("message") or {}
            accumulator.set_usage(parse_claude_usage(message.get("usage")))

        elif event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                accumulator.start_tool_call(event.get("index", 0), block.get("id", ""), block.get("name", ""))
            elif block.get("type") == "text" and block.get("text"):
                accumulator.append_text(block["text"])
            elif block.get("type") == "thinking" and block.get("thinking"):
                accumulator.append_reasoning(block["thinking"])

        elif event_type == "content_block_delta":
            delta = event.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                accumulator.append_text(delta.get("text", ""))
            elif delta_type == "thinking_delta":
                accumulator.append_reasoning(delta.get("thinking", ""))
            elif delta_type == "input_json_delta":
                accumulator.append_tool_arguments(event.get("index", 0), delta.get("partial_json", ""))

        elif event_type == "content_block_stop":
            key = event.get("index", 0)
            if accumulator.get_tool_call(key) is not None:
                accumulator.complete_tool_call(key)

        elif event_type == "message_delta":
            delta = event.get("delta") or {}
            accumulator.set_finish_reason(self.map_finish_reason(delta.get("stop_reason")))
            if delta.get("stop_sequence"):
                accumulator.stop_sequence = delta["stop_sequence"]
            accumulator.set_usage(parse_claude_usage(event.get("usage"), accumulator.usage))

        elif event_type == "error":
            error = event.get("error") or {}
            raise DecodeError(
                f"Claude stream error ({error.get('type', 'unknown')}): {error.get('message', 'unknown stream error')}",
                payload=payload,
                provider=self.provider_type,
            )

    def parse_final(self, raw: Dict[str, Any]) -> UnifiedResponse:
        if not isinstance(raw, dict) or not isinstance(raw.get("content"), list):
            raise DecodeError("Claude response has no content array", payload=raw, provider=self.provider_type)

        text_parts: List[str] = []
        thinking_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        for block in raw["content"]:
            block_type = block.get("type")
            if block_type == "text":
                text_parts.append(block.get("text") or "")
            elif block_type == "thinking":
                thinking_parts.append(block.get("thinking") or "")
            elif block_type == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    arguments_text=json.dumps(block.get("input") or {}, ensure_ascii=False),
                ))

        return UnifiedResponse(
            content="".join(text_parts),
            reasoning_content="".join(thinking_parts) or None,
            usage=parse_claude_usage(raw.get("usage")),
            finish_reason=self.map_finish_reason(raw.get("stop_reason")),
            tool_calls=tool_calls,
            model=raw.get("model"),
            stop_sequence=raw.get("stop_sequence"),
        )
