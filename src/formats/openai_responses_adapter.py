"""
OpenAI Responses 适配器
/v1/responses 协议：input 数组、instructions、语义化流事件
"""

import json
from typing import Any, Dict, List, Optional

from src.formats.content_utils import build_data_url
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

logger = setup_logger("openai_responses_adapter")

DEFAULT_TEMPERATURE = 1.0


def parse_responses_usage(raw: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not raw:
        return None
    return Usage.of(
        raw.get("input_tokens"),
        raw.get("output_tokens"),
        raw.get("total_tokens"),
        cached_tokens=(raw.get("input_tokens_details") or {}).get("cached_tokens"),
        reasoning_tokens=(raw.get("output_tokens_details") or {}).get("reasoning_tokens"),
    )


def _annotation(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if raw.get("type") == "url_citation":
        return {
            "type": "url_citation",
            "urlCitation": {
                "startIndex": raw.get("start_index"),
                "endIndex": raw.get("end_index"),
                "url": raw.get("url"),
                "title": raw.get("title"),
            },
        }
    if raw.get("type") == "file_citation":
        return {
            "type": "file_citation",
            "fileCitation": {
                "startIndex": raw.get("start_index"),
                "endIndex": raw.get("end_index"),
                "fileId": raw.get("file_id"),
                "quote": raw.get("quote"),
            },
        }
    return None


def output_annotations(output: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    annotations = []
    for item in output or []:
        if item.get("type") != "message":
            continue
        for content in item.get("content") or []:
            for raw in content.get("annotations") or []:
                converted = _annotation(raw)
                if converted is not None:
                    annotations.append(converted)
    return annotations


def _input_part(block: ContentBlock, role: Role) -> Optional[Dict[str, Any]]:
    if block.type == ContentBlockType.TEXT:
        return {"type": "output_text" if role == Role.ASSISTANT else "input_text", "text": block.text or ""}
    if block.type == ContentBlockType.IMAGE:
        return {"type": "input_image", "image_url": block.url or build_data_url(block.data or "", block.mime_type)}
    if block.type == ContentBlockType.DOCUMENT:
        if block.url and not block.data:
            return {"type": "input_file", "file_url": block.url}
        return {
            "type": "input_file",
            "filename": block.file_name or "document.pdf",
            "file_data": build_data_url(block.data or "", block.mime_type or "application/pdf"),
        }
    logger.warning(f"Responses API does not accept {block.type.value} content blocks, skipped")
    return None


def build_input(messages: List[Message]) -> Any:
    """A lone plain-text user message is sent as a bare string."""
    items: List[Dict[str, Any]] = []
    for message in messages:
        if message.role == Role.SYSTEM:
            continue
        if isinstance(message.content, str):
            items.append({"role": message.role.value, "content": message.content})
            continue

        parts: List[Dict[str, Any]] = []
        for block in message.content:
            if block.type == ContentBlockType.TOOL_USE:
                items.append({
                    "type": "function_call",
                    "call_id": block.tool_use_id,
                    "name": block.tool_name,
                    "arguments": json.dumps(block.tool_input or {}, ensure_ascii=False),
                })
            elif block.type == ContentBlockType.TOOL_RESULT:
                items.append({
                    "type": "function_call_output",
                    "call_id": block.tool_result_id,
                    "output": block.result_text(),
                })
            else:
                part = _input_part(block, message.role)
                if part is not None:
                    parts.append(part)
        if parts:
            items.append({"role": message.role.value, "content": parts})

    if len(items) == 1 and items[0].get("role") == "user" and isinstance(items[0].get("content"), str):
        return items[0]["content"]
    return items


class OpenAIResponsesAdapter(BaseProviderAdapter):
    """OpenAI Responses API adapter."""

    provider_type = "openai-responses"
    done_sentinel = None
    finish_reason_map = {
        "completed": FinishReason.STOP,
        "incomplete": FinishReason.LENGTH,
        "failed": FinishReason.ERROR,
    }

    def build_url(self, filtered: FilteredRequest) -> str:
        endpoint = self.endpoint_for(filtered.profile, "chat", "responses")
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return build_versioned_url(filtered.profile.base_url, endpoint)

    def build_headers(self, profile: Profile) -> Dict[str, str]:
        headers = {}
        if profile.primary_key():
            headers["Authorization"] = f"Bearer {profile.primary_key()}"
        return self.merged_headers(profile, headers)

    def _tools(self, request: UnifiedRequest) -> List[Dict[str, Any]]:
        tools = []
        for tool in request.tools or []:
            item = {"type": "function", "name": tool.name, "parameters": tool.schema()}
            if tool.description:
                item["description"] = tool.description
            if tool.strict is not None:
                item["strict"] = tool.strict
            tools.append(item)
        if request.web_search_options is not None:
            tools.append({"type": "web_search_preview", **request.web_search_options})
        return tools

    def build_body(self, filtered: FilteredRequest) -> Dict[str, Any]:
        request = filtered.request
        body: Dict[str, Any] = {
            "model": request.model_id,
            "input": build_input(request.messages),
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
        }

        max_tokens = request.max_completion_tokens or request.max_tokens
        if max_tokens is not None:
            body["max_output_tokens"] = max_tokens

        instructions = [m.text() for m in request.messages if m.role == Role.SYSTEM]
        if instructions:
            body["instructions"] = "\n\n".join(instructions)

        for key, value in (
            ("top_p", request.top_p),
            ("top_logprobs", request.top_logprobs),
            ("parallel_tool_calls", request.parallel_tool_calls),
            ("service_tier", request.service_tier),
            ("store", request.store),
            ("user", request.user),
            ("metadata", request.metadata),
        ):
            if value is not None:
                body[key] = value

        tools = self._tools(request)
        if tools:
            body["tools"] = tools
        choice = request.tool_choice
        if choice is not None:
            if choice.mode == "function" and choice.function_name:
                body["tool_choice"] = {"type": "function", "name": choice.function_name}
            else:
                body["tool_choice"] = choice.mode

        if request.response_format is not None:
            body["text"] = {"format": request.response_format}
        if request.reasoning_effort:
            body["reasoning"] = {"effort": request.reasoning_effort}
        if request.stream:
            body["stream"] = True

        apply_extensions(body, filtered.extensions)
        return clean_payload(body)

    # ==================== 响应解析 ====================

    def _apply_response(self, response: Dict[str, Any], accumulator: StreamAccumulator) -> None:
        """response.completed / response.incomplete 携带的完整响应对象"""
        accumulator.set_usage(parse_responses_usage(response.get("usage")))
        accumulator.set_finish_reason(self.map_finish_reason(response.get("status")))
        accumulator.add_annotations(output_annotations(response.get("output")))

        seen = {call.id for call in accumulator.finished_tool_calls}
        seen.update(state.tool_call_id for state in accumulator.tool_calls.values())
        for item in response.get("output") or []:
            if item.get("type") == "function_call":
                call_id = item.get("call_id") or item.get("id", "")
                if call_id not in seen:
                    accumulator.add_tool_call(call_id, item.get("name", ""), item.get("arguments") or "")
        if accumulator.finished_tool_calls or accumulator.tool_calls:
            accumulator.set_finish_reason(FinishReason.TOOL_CALLS)

    def parse_stream_event(self, payload: str, accumulator: StreamAccumulator) -> None:
        event = self.load_event(payload)
        if event is None:
            return

        event_type = event.get("type", "")
        if event_type == "response.output_text.delta":
            accumulator.append_text(event.get("delta") or "")

        elif event_type in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
            accumulator.append_reasoning(event.get("delta") or "")

        elif event_type == "response.refusal.delta":
            accumulator.append_refusal(event.get("delta") or "")

        elif event_type == "response.output_item.added":
            item = event.get("item") or {}
            if item.get("type") == "function_call":
                key = item.get("id") or item.get("call_id")
                accumulator.start_tool_call(key, item.get("call_id") or item.get("id", ""), item.get("name", ""))
                if item.get("arguments"):
                    accumulator.append_tool_arguments(key, item["arguments"])

        elif event_type == "response.function_call_arguments.delta":
            accumulator.append_tool_arguments(event.get("item_id"), event.get("delta") or "")

        elif event_type == "response.function_call_arguments.done":
            key = event.get("item_id")
            state = accumulator.get_tool_call(key)
            if state is not None:
                if not state.fragments and event.get("arguments"):
                    state.fragments.append(event["arguments"])
                accumulator.complete_tool_call(key)

        elif event_type == "response.output_item.done":
            item = event.get("item") or {}
            key = item.get("id")
            if item.get("type") == "function_call" and accumulator.get_tool_call(key) is not None:
                accumulator.complete_tool_call(key)

        elif event_type in ("response.completed", "response.incomplete"):
            self._apply_response(event.get("response") or {}, accumulator)

        elif event_type in ("error", "response.failed"):
            error = event.get("error") or (event.get("response") or {}).get("error") or {}
            raise DecodeError(
                f"Responses stream error: {error.get('message') or event.get('message') or 'unknown error'}",
                payload=payload,
                provider=self.provider_type,
            )

    def parse_final(self, raw: Dict[str, Any]) -> UnifiedResponse:
        if not isinstance(raw, dict) or not isinstance(raw.get("output"), list):
            raise DecodeError("Responses payload has no output array", payload=raw, provider=self.provider_type)

        content_parts: List[str] = []
        reasoning_parts: List[str] = []
        refusal: Optional[str] = None
        tool_calls: List[ToolCall] = []
        for item in raw["output"]:
            item_type = item.get("type")
            if item_type == "message":
                for content in item.get("content") or []:
                    if content.get("type") == "output_text":
                        content_parts.append(content.get("text") or "")
                    elif content.get("type") == "refusal":
                        refusal = content.get("refusal")
            elif item_type == "reasoning":
                for summary in item.get("summary") or []:
                    reasoning_parts.append(summary.get("text") or "")
            elif item_type == "function_call":
                tool_calls.append(ToolCall(
                    id=item.get("call_id") or item.get("id", ""),
                    name=item.get("name", ""),
                    arguments_text=item.get("arguments") or "",
                ))

        finish_reason = FinishReason.TOOL_CALLS if tool_calls else self.map_finish_reason(raw.get("status"))
        return UnifiedResponse(
            content="".join(content_parts),
            reasoning_content="".join(reasoning_parts) or None,
            usage=parse_responses_usage(raw.get("usage")),
            finish_reason=finish_reason,
            tool_calls=tool_calls,
            annotations=output_annotations(raw["output"]),
            model=raw.get("model"),
            refusal=refusal,
            service_tier=raw.get("service_tier"),
        )
