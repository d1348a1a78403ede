"""
OpenAI 兼容适配器
Chat Completions 协议：OpenAI 官方以及 DeepSeek / SiliconFlow / Groq / OpenRouter 等兼容端点
"""

import json
from typing import Any, Dict, List, Optional

from src.core.transport import RequestSpec
from src.formats.content_utils import audio_format_from_mime, build_data_url
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

logger = setup_logger("openai_adapter")

DEFAULT_TEMPERATURE = 0.5

# 各家推理模型把思考内容放在不同字段里
REASONING_KEYS = ("reasoning_content", "reasoning", "thinking", "thought")


def parse_openai_usage(raw: Optional[Dict[str, Any]]) -> Optional[Usage]:
    """Usage with prompt/completion detail fields."""
    if not raw:
        return None
    prompt_details = raw.get("prompt_tokens_details") or {}
    completion_details = raw.get("completion_tokens_details") or {}
    return Usage.of(
        raw.get("prompt_tokens"),
        raw.get("completion_tokens"),
        raw.get("total_tokens"),
        cached_tokens=prompt_details.get("cached_tokens"),
        prompt_audio_tokens=prompt_details.get("audio_tokens"),
        reasoning_tokens=completion_details.get("reasoning_tokens"),
        completion_audio_tokens=completion_details.get("audio_tokens"),
        accepted_prediction_tokens=completion_details.get("accepted_prediction_tokens"),
        rejected_prediction_tokens=completion_details.get("rejected_prediction_tokens"),
    )


def _url_citations(annotations: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    result = []
    for ann in annotations or []:
        citation = ann.get("url_citation") or {}
        result.append({
            "type": "url_citation",
            "urlCitation": {
                "startIndex": citation.get("start_index"),
                "endIndex": citation.get("end_index"),
                "url": citation.get("url"),
                "title": citation.get("title"),
            },
        })
    return result


def _first_reasoning(source: Dict[str, Any]) -> Optional[str]:
    for key in REASONING_KEYS:
        value = source.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class OpenAIAdapter(BaseProviderAdapter):
    """OpenAI Chat Completions adapter."""

    provider_type = "openai"
    finish_reason_map = {
        "stop": FinishReason.STOP,
        "length": FinishReason.LENGTH,
        "content_filter": FinishReason.CONTENT_FILTER,
        "tool_calls": FinishReason.TOOL_CALLS,
        "function_call": FinishReason.TOOL_CALLS,
    }

    def _url(self, profile: Profile, key: str, default: str) -> str:
        endpoint = self.endpoint_for(profile, key, default)
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return build_versioned_url(profile.base_url, endpoint)

    def build_url(self, filtered: FilteredRequest) -> str:
        return self._url(filtered.profile, "chat", "chat/completions")

    def build_headers(self, profile: Profile) -> Dict[str, str]:
        return self.merged_headers(profile, {"Authorization": f"Bearer {profile.primary_key()}"})

    # ==================== 请求构建 ====================

    def _convert_block(self, block: ContentBlock) -> Optional[Dict[str, Any]]:
        if block.type == ContentBlockType.TEXT:
            return {"type": "text", "text": block.text or ""}

        if block.type == ContentBlockType.IMAGE:
            url = block.url or build_data_url(block.data or "", block.mime_type)
            return {"type": "image_url", "image_url": {"url": url}}

        if block.type == ContentBlockType.DOCUMENT:
            if block.mime_type and block.mime_type != "application/pdf":
                logger.warning(f"Document type {block.mime_type} is not supported by chat completions, skipped")
                return None
            file_data = block.url or build_data_url(block.data or "", "application/pdf")
            return {
                "type": "file",
                "file": {"filename": block.file_name or "document.pdf", "file_data": file_data},
            }

        if block.type == ContentBlockType.AUDIO:
            return {
                "type": "input_audio",
                "input_audio": {"data": block.data or "", "format": audio_format_from_mime(block.mime_type)},
            }

        if block.type == ContentBlockType.VIDEO:
            # 兼容端点（如 Qwen-VL）按 image_url 方式接收视频
            url = block.url or build_data_url(block.data or "", block.mime_type or "video/mp4")
            part: Dict[str, Any] = {"type": "image_url", "image_url": {"url": url}}
            if block.video_metadata:
                part["video_metadata"] = block.video_metadata
            return part

        return None

    def _convert_message(self, message: Message) -> List[Dict[str, Any]]:
        """One unified message can expand into several wire messages (tool results)."""
        if isinstance(message.content, str):
            item: Dict[str, Any] = {"role": message.role.value, "content": message.content}
            if message.prefix:
                item["prefix"] = True
            return [item]

        parts: List[Dict[str, Any]] = []
        tool_calls: List[Dict[str, Any]] = []
        tool_messages: List[Dict[str, Any]] = []

        for block in message.content:
            if block.type == ContentBlockType.TOOL_USE:
                tool_calls.append({
                    "id": block.tool_use_id,
                    "type": "function",
                    "function": {
                        "name": block.tool_name,
                        "arguments": json.dumps(block.tool_input or {}, ensure_ascii=False),
                    },
                })
            elif block.type == ContentBlockType.TOOL_RESULT:
                tool_messages.append({
                    "role": "tool",
                    "tool_call_id": block.tool_result_id,
                    "content": block.result_text(),
                })
            else:
                part = self._convert_block(block)
                if part is not None:
                    parts.append(part)

        result: List[Dict[str, Any]] = list(tool_messages)
        if parts or tool_calls:
            item = {"role": message.role.value}
            if message.role == Role.ASSISTANT and all(p["type"] == "text" for p in parts):
                # assistant 历史消息用纯文本更通用
                item["content"] = "".join(p["text"] for p in parts) if parts else None
            else:
                item["content"] = parts
            if tool_calls:
                item["tool_calls"] = tool_calls
            if message.prefix:
                item["prefix"] = True
            result.append(item)
        return result

    def _tool_choice(self, request: UnifiedRequest) -> Any:
        choice = request.tool_choice
        if choice is None:
            return None
        if choice.mode == "function" and choice.function_name:
            return {"type": "function", "function": {"name": choice.function_name}}
        return choice.mode

    def build_body(self, filtered: FilteredRequest) -> Dict[str, Any]:
        request = filtered.request
        wants_usage = filtered.profile.type.lower() != "openai-compatible"

        messages: List[Dict[str, Any]] = []
        for message in request.messages:
            messages.extend(self._convert_message(message))

        body: Dict[str, Any] = {
            "model": request.model_id,
            "messages": messages,
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
        }

        # max_completion_tokens 优先于 max_tokens
        if request.max_completion_tokens is not None:
            body["max_completion_tokens"] = request.max_completion_tokens
        elif request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens

        optional = {
            "top_p": request.top_p,
            "frequency_penalty": request.frequency_penalty,
            "presence_penalty": request.presence_penalty,
            "seed": request.seed,
            "stop": request.stop,
            "n": request.n,
            "logprobs": request.logprobs,
            "top_logprobs": request.top_logprobs,
            "response_format": request.response_format,
            "parallel_tool_calls": request.parallel_tool_calls,
            "reasoning_effort": request.reasoning_effort,
            "web_search_options": request.web_search_options,
            "modalities": request.modalities,
            "audio": request.audio,
            "prediction": request.prediction,
            "service_tier": request.service_tier,
            "logit_bias": request.logit_bias,
            "store": request.store,
            "user": request.user,
            "metadata": request.metadata,
            "safety_settings": request.safety_settings,
        }
        for key, value in optional.items():
            if value is not None:
                body[key] = value

        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        k: v
                        for k, v in (
                            ("name", tool.name),
                            ("description", tool.description),
                            ("parameters", tool.schema()),
                            ("strict", tool.strict),
                        )
                        if v is not None
                    },
                }
                for tool in request.tools
            ]
            tool_choice = self._tool_choice(request)
            if tool_choice is not None:
                body["tool_choice"] = tool_choice

        if request.stream:
            body["stream"] = True
            if request.stream_options is not None:
                body["stream_options"] = request.stream_options
            elif wants_usage:
                body["stream_options"] = {"include_usage": True}

        apply_extensions(body, filtered.extensions)
        return clean_payload(body)

    # ==================== 响应解析 ====================

    def parse_stream_event(self, payload: str, accumulator: StreamAccumulator) -> None:
        data = self.load_event(payload)
        if data is None:
            return

        if data.get("system_fingerprint"):
            accumulator.system_fingerprint = data["system_fingerprint"]
        if data.get("service_tier"):
            accumulator.service_tier = data["service_tier"]
        if data.get("usage"):
            accumulator.set_usage(parse_openai_usage(data["usage"]))

        choices = data.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        delta = choice.get("delta") or {}

        content = delta.get("content")
        if isinstance(content, str):
            accumulator.append_text(content)

        reasoning = _first_reasoning(delta)
        if reasoning:
            accumulator.append_reasoning(reasoning)

        if delta.get("refusal"):
            accumulator.append_refusal(delta["refusal"])

        for tc in delta.get("tool_calls") or []:
            key = tc.get("index", 0)
            function = tc.get("function") or {}
            if tc.get("id") or function.get("name"):
                accumulator.start_tool_call(key, tc.get("id") or "", function.get("name") or "")
            arguments = function.get("arguments")
            if arguments:
                accumulator.append_tool_arguments(key, arguments)

        accumulator.add_annotations(_url_citations(delta.get("annotations")))
        accumulator.set_finish_reason(self.map_finish_reason(choice.get("finish_reason")))

    def finish_stream(self, accumulator: StreamAccumulator) -> UnifiedResponse:
        if accumulator.tool_calls and accumulator.finish_reason is None:
            accumulator.set_finish_reason(FinishReason.TOOL_CALLS)
        return accumulator.finalize()

    def parse_final(self, raw: Dict[str, Any]) -> UnifiedResponse:
        choices = raw.get("choices") if isinstance(raw, dict) else None
        if not choices:
            raise DecodeError("OpenAI response has no choices", payload=raw, provider=self.provider_type)

        choice = choices[0]
        message = choice.get("message") or {}

        tool_calls = [
            ToolCall(
                id=tc.get("id", ""),
                name=(tc.get("function") or {}).get("name", ""),
                arguments_text=(tc.get("function") or {}).get("arguments") or "",
                type=tc.get("type", "function"),
            )
            for tc in message.get("tool_calls") or []
        ]

        audio = message.get("audio")
        if audio:
            audio = {
                "id": audio.get("id"),
                "data": audio.get("data"),
                "transcript": audio.get("transcript"),
                "expiresAt": audio.get("expires_at"),
            }

        logprobs = choice.get("logprobs")
        if logprobs:
            logprobs = {"content": logprobs.get("content"), "refusal": logprobs.get("refusal")}

        refusal = message.get("refusal") or None
        return UnifiedResponse(
            content="" if refusal else (message.get("content") or ""),
            reasoning_content=None if refusal else _first_reasoning(message),
            usage=parse_openai_usage(raw.get("usage")),
            finish_reason=self.map_finish_reason(choice.get("finish_reason")),
            tool_calls=tool_calls,
            annotations=_url_citations(message.get("annotations")),
            model=raw.get("model"),
            refusal=refusal,
            system_fingerprint=raw.get("system_fingerprint"),
            service_tier=raw.get("service_tier"),
            logprobs=logprobs,
            audio=audio or None,
        )

    # ==================== 向量 ====================

    async def embed(self, profile: Profile, model_id: str, inputs: List[str]) -> List[List[float]]:
        spec = RequestSpec(
            method="POST",
            headers=self.build_headers(profile),
            body=json.dumps({"model": model_id, "input": inputs}, ensure_ascii=False),
            relay_strategy=profile.relay_strategy,
        )
        handle = await self.transport.send(self._url(profile, "embeddings", "embeddings"), spec)
        raw = await handle.json()
        items = raw.get("data") if isinstance(raw, dict) else None
        if items is None:
            raise DecodeError("Embedding response has no data", payload=raw, provider=self.provider_type)
        return [item.get("embedding") or [] for item in sorted(items, key=lambda i: i.get("index", 0))]
