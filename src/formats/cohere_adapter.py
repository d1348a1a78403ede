"""
Cohere 适配器
Chat API v2
"""

import json
from typing import Any, Dict, List, Optional

from src.formats.content_utils import build_data_url
from src.formats.normalizer import FilteredRequest, apply_extensions, clean_payload
from src.formats.unified.adapters import BaseProviderAdapter, build_versioned_url
from src.formats.unified.exceptions import DecodeError
from src.formats.unified.stream_state import StreamAccumulator
from src.formats.unified.types import (
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

logger = setup_logger("cohere_adapter")

DEFAULT_BASE_URL = "https://api.cohere.com"
DEFAULT_TEMPERATURE = 0.5


def parse_cohere_usage(raw: Optional[Dict[str, Any]]) -> Optional[Usage]:
    """usage.tokens 优先，其次 billed_units；旧版响应放在 meta 里"""
    if not raw:
        return None
    tokens = raw.get("tokens") or raw.get("billed_units")
    if not tokens:
        return None
    return Usage.of(tokens.get("input_tokens"), tokens.get("output_tokens"))


def convert_cohere_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    result: List[Dict[str, Any]] = []
    for message in messages:
        if isinstance(message.content, str):
            result.append({"role": message.role.value, "content": message.content})
            continue

        parts: List[Dict[str, Any]] = []
        tool_calls: List[Dict[str, Any]] = []
        for block in message.content:
            if block.type == ContentBlockType.TEXT:
                parts.append({"type": "text", "text": block.text or ""})
            elif block.type == ContentBlockType.IMAGE:
                url = block.url or build_data_url(block.data or "", block.mime_type)
                parts.append({"type": "image_url", "image_url": {"url": url}})
            elif block.type == ContentBlockType.TOOL_USE:
                tool_calls.append({
                    "id": block.tool_use_id,
                    "type": "function",
                    "function": {
                        "name": block.tool_name,
                        "arguments": json.dumps(block.tool_input or {}, ensure_ascii=False),
                    },
                })
            elif block.type == ContentBlockType.TOOL_RESULT:
                result.append({
                    "role": "tool",
                    "tool_call_id": block.tool_result_id,
                    "content": block.result_text(),
                })
            else:
                logger.warning(f"Cohere does not accept {block.type.value} content blocks, skipped")

        if not parts and not tool_calls:
            continue
        item: Dict[str, Any] = {"role": message.role.value}
        if all(p["type"] == "text" for p in parts):
            item["content"] = "\n".join(p["text"] for p in parts)
        else:
            item["content"] = parts
        if tool_calls:
            item["tool_calls"] = tool_calls
        result.append(item)
    return result


class CohereAdapter(BaseProviderAdapter):
    """Cohere Chat v2 adapter."""

    provider_type = "cohere"
    done_sentinel = None
    finish_reason_map = {
        "COMPLETE": FinishReason.STOP,
        "STOP_SEQUENCE": FinishReason.STOP_SEQUENCE,
        "MAX_TOKENS": FinishReason.MAX_TOKENS,
        "TOOL_CALL": FinishReason.TOOL_CALLS,
        "ERROR": FinishReason.ERROR,
    }

    def build_url(self, filtered: FilteredRequest) -> str:
        endpoint = self.endpoint_for(filtered.profile, "chat", "chat")
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        base_url = filtered.profile.base_url or DEFAULT_BASE_URL
        return build_versioned_url(base_url, endpoint, default_version="v2", markers=("/v2",))

    def build_headers(self, profile: Profile) -> Dict[str, str]:
        return self.merged_headers(profile, {"Authorization": f"Bearer {profile.primary_key()}"})

    def _tool_choice(self, request: UnifiedRequest) -> Optional[Dict[str, Any]]:
        choice = request.tool_choice
        if choice is None:
            return None
        if choice.mode == "function" and choice.function_name:
            return {"type": "function", "function": {"name": choice.function_name}}
        return {"type": choice.mode}

    def build_body(self, filtered: FilteredRequest) -> Dict[str, Any]:
        request = filtered.request
        body: Dict[str, Any] = {
            "model": request.model_id,
            "messages": convert_cohere_messages(request.messages),
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
        }

        for key, value in (
            ("max_tokens", request.max_tokens),
            ("p", request.top_p),
            ("k", request.top_k),
            ("frequency_penalty", request.frequency_penalty),
            ("presence_penalty", request.presence_penalty),
            ("seed", request.seed),
            ("response_format", request.response_format),
        ):
            if value is not None:
                body[key] = value

        if request.stop:
            body["stop_sequences"] = [request.stop] if isinstance(request.stop, str) else list(request.stop)

        if request.thinking_enabled is not None:
            if request.thinking_enabled:
                thinking: Dict[str, Any] = {"type": "enabled"}
                if request.thinking_budget:
                    thinking["budget_tokens"] = request.thinking_budget
                body["thinking"] = thinking
            else:
                body["thinking"] = {"type": "disabled"}

        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description or "",
                        "parameters": tool.schema(),
                    },
                }
                for tool in request.tools
            ]
            tool_choice = self._tool_choice(request)
            if tool_choice is not None:
                body["tool_choice"] = tool_choice

        if request.stream:
            body["stream"] = True

        apply_extensions(body, filtered.extensions)
        return clean_payload(body)

    def parse_stream_event(self, payload: str, accumulator: StreamAccumulator) -> None:
        event = self.load_event(payload)
        if event is None:
            return

        event_type = event.get("type")
        delta = event.get("delta") or {}
        message = delta.get("message") or {}
        key = event.get("index", 0)

        if event_type == "content-delta":
            content = message.get("content") or {}
            if content.get("thinking"):
                accumulator.append_reasoning(content["thinking"])
            if content.get("text"):
                accumulator.append_text(content["text"])

        elif event_type == "tool-call-start":
            call = message.get("tool_calls") or {}
            function = call.get("function") or {}
            accumulator.start_tool_call(key, call.get("id", ""), function.get("name", ""))
            if function.get("arguments"):
                accumulator.append_tool_arguments(key, function["arguments"])

        elif event_type == "tool-call-delta":
            function = (message.get("tool_calls") or {}).get("function") or {}
            if function.get("arguments"):
                accumulator.append_tool_arguments(key, function["arguments"])

        elif event_type == "tool-call-end":
            if accumulator.get_tool_call(key) is not None:
                accumulator.complete_tool_call(key)

        elif event_type == "message-end":
            accumulator.set_finish_reason(self.map_finish_reason(delta.get("finish_reason")))
            accumulator.set_usage(parse_cohere_usage(delta.get("usage")))

    def parse_final(self, raw: Dict[str, Any]) -> UnifiedResponse:
        if not isinstance(raw, dict):
            raise DecodeError("Cohere response is not an object", payload=raw, provider=self.provider_type)

        message = raw.get("message")
        if message is not None:
            text_parts = []
            thinking_parts = []
            for part in message.get("content") or []:
                if part.get("type") == "text":
                    text_parts.append(part.get("text") or "")
                elif part.get("type") == "thinking":
                    thinking_parts.append(part.get("thinking") or "")
            content = "".join(text_parts)
            reasoning = "".join(thinking_parts) or None
            tool_calls = [
                ToolCall(
                    id=tc.get("id", ""),
                    name=(tc.get("function") or {}).get("name", ""),
                    arguments_text=(tc.get("function") or {}).get("arguments") or "",
                )
                for tc in message.get("tool_calls") or []
            ]
        elif "text" in raw:
            content, reasoning, tool_calls = raw.get("text") or "", None, []
        else:
            raise DecodeError("Cohere response has no message", payload=raw, provider=self.provider_type)

        usage = parse_cohere_usage(raw.get("usage")) or parse_cohere_usage(raw.get("meta"))
        return UnifiedResponse(
            content=content,
            reasoning_content=reasoning,
            usage=usage,
            finish_reason=self.map_finish_reason(raw.get("finish_reason")),
            tool_calls=tool_calls,
        )
