"""
Google Gemini 适配器
generateContent / streamGenerateContent 协议
"""

import json
import time
from typing import Any, Dict, List, Optional

from src.formats.content_utils import infer_media_mime_type, sanitize_schema_for_gemini
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

logger = setup_logger("gemini_adapter")

DEFAULT_MAX_OUTPUT_TOKENS = 8192
DEFAULT_TEMPERATURE = 1.0

THINKING_LEVELS = ("minimal", "low", "medium", "high")

DEFAULT_SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "OFF"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "OFF"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "OFF"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "OFF"},
    {"category": "HARM_CATEGORY_CIVIC_INTEGRITY", "threshold": "BLOCK_NONE"},
]

GEMINI_FINISH_REASONS = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.MAX_TOKENS,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "LANGUAGE": FinishReason.CONTENT_FILTER,
    "BLOCKLIST": FinishReason.CONTENT_FILTER,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER,
    "SPII": FinishReason.CONTENT_FILTER,
    "IMAGE_SAFETY": FinishReason.CONTENT_FILTER,
    "OTHER": FinishReason.STOP,
    "MALFORMED_FUNCTION_CALL": FinishReason.STOP,
}


def parse_gemini_usage(raw: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not raw:
        return None
    return Usage.of(
        raw.get("promptTokenCount"),
        raw.get("candidatesTokenCount"),
        raw.get("totalTokenCount"),
        cached_tokens=raw.get("cachedContentTokenCount"),
        reasoning_tokens=raw.get("thoughtsTokenCount"),
    )


def parse_gemini_logprobs(result: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not result or not result.get("topCandidates"):
        return None
    content = []
    for top in result["topCandidates"]:
        candidates = top.get("candidates") or []
        if not candidates:
            continue
        first = candidates[0]
        content.append({
            "token": first.get("token", ""),
            "logprob": first.get("logProbability", 0),
            "bytes": None,
            "topLogprobs": [
                {"token": c.get("token", ""), "logprob": c.get("logProbability", 0), "bytes": None}
                for c in candidates[:5]
            ],
        })
    return {"content": content} if content else None


def grounding_annotations(metadata: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """groundingMetadata.groundingChunks -> url_citation 注解"""
    annotations = []
    for chunk in (metadata or {}).get("groundingChunks") or []:
        web = chunk.get("web") or {}
        if web.get("uri"):
            annotations.append({
                "type": "url_citation",
                "urlCitation": {"url": web["uri"], "title": web.get("title")},
            })
    return annotations


def _media_part(block: ContentBlock) -> Dict[str, Any]:
    mime_type = block.mime_type or infer_media_mime_type(block.data)
    if block.data:
        part: Dict[str, Any] = {"inlineData": {"mimeType": mime_type, "data": block.data}}
    else:
        part = {"fileData": {"mimeType": mime_type, "fileUri": block.url or ""}}
    if block.video_metadata:
        part["videoMetadata"] = block.video_metadata
    return part


def build_gemini_parts(
    blocks: List[ContentBlock],
    tool_names: Optional[Dict[str, str]] = None,
) -> List[Dict[str, Any]]:
    tool_names = tool_names or {}
    parts: List[Dict[str, Any]] = []
    for block in blocks:
        if block.type == ContentBlockType.TEXT:
            parts.append({"text": block.text or ""})
        elif block.type == ContentBlockType.TOOL_USE:
            parts.append({"functionCall": {"name": block.tool_name, "args": block.tool_input or {}}})
        elif block.type == ContentBlockType.TOOL_RESULT:
            # functionResponse 以函数名关联调用：先用块上的名字，再按调用 id 找先前的 functionCall
            name = block.tool_name or tool_names.get(block.tool_result_id or "") or block.tool_result_id
            parts.append({
                "functionResponse": {
                    "name": name,
                    "response": {"result": block.result_text()},
                }
            })
        else:
            parts.append(_media_part(block))
    return parts


def build_gemini_contents(messages: List[Message]) -> List[Dict[str, Any]]:
    contents = []
    # tool_use_id -> 函数名，供后续 functionResponse 使用
    tool_names: Dict[str, str] = {}
    for message in messages:
        if message.role == Role.SYSTEM:
            continue
        if isinstance(message.content, str):
            parts = [{"text": message.content}]
        else:
            for block in message.content:
                if block.type == ContentBlockType.TOOL_USE and block.tool_use_id and block.tool_name:
                    tool_names[block.tool_use_id] = block.tool_name
            parts = build_gemini_parts(message.content, tool_names)
        contents.append({"role": "model" if message.role == Role.ASSISTANT else "user", "parts": parts})
    return contents


def merge_safety_settings(custom: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """默认全部关闭，调用方按 category 覆盖"""
    merged = {s["category"]: s for s in DEFAULT_SAFETY_SETTINGS}
    for setting in custom or []:
        if setting.get("category"):
            merged[setting["category"]] = setting
    return list(merged.values())


def _thinking_config(request: UnifiedRequest) -> Optional[Dict[str, Any]]:
    include = request.include_thoughts is True or request.thinking_enabled is True
    if (
        request.thinking_level is None
        and request.reasoning_effort is None
        and request.thinking_budget is None
        and not include
    ):
        return None

    config: Dict[str, Any] = {}
    if include:
        config["includeThoughts"] = True
    if "gemini-3" in request.model_id:
        level = (request.thinking_level or request.reasoning_effort or "").lower()
        if level in THINKING_LEVELS:
            config["thinkingLevel"] = level
        elif level:
            config["thinkingLevel"] = "high" if level == "max" else "low"
        elif request.thinking_budget is not None:
            config["thinkingBudget"] = request.thinking_budget
    elif request.thinking_budget is not None:
        config["thinkingBudget"] = request.thinking_budget
    return config


def build_generation_config(request: UnifiedRequest) -> Dict[str, Any]:
    config: Dict[str, Any] = {
        "maxOutputTokens": request.max_tokens or DEFAULT_MAX_OUTPUT_TOKENS,
        "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
    }
    for key, value in (
        ("topP", request.top_p),
        ("topK", request.top_k),
        ("presencePenalty", request.presence_penalty),
        ("frequencyPenalty", request.frequency_penalty),
        ("seed", request.seed),
        ("speechConfig", request.speech_config),
        ("responseModalities", request.response_modalities),
        ("mediaResolution", request.media_resolution),
    ):
        if value is not None:
            config[key] = value

    if request.stop:
        config["stopSequences"] = [request.stop] if isinstance(request.stop, str) else list(request.stop)

    response_format = request.response_format or {}
    if response_format.get("type") == "json_object":
        config["responseMimeType"] = "application/json"
    elif response_format.get("type") == "json_schema" and response_format.get("json_schema"):
        config["responseMimeType"] = "application/json"
        schema = response_format["json_schema"].get("schema") or {}
        config["responseSchema"] = sanitize_schema_for_gemini(schema, uppercase_types=True)

    if request.logprobs:
        config["responseLogprobs"] = True
        if request.top_logprobs is not None:
            config["logprobs"] = request.top_logprobs

    thinking = _thinking_config(request)
    if thinking is not None:
        config["thinkingConfig"] = thinking
    return config


def _build_tools(request: UnifiedRequest) -> List[Dict[str, Any]]:
    tools: List[Dict[str, Any]] = []
    if request.tools:
        tools.append({
            "functionDeclarations": [
                {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": sanitize_schema_for_gemini(tool.schema()),
                }
                for tool in request.tools
            ]
        })
    if request.enable_code_execution:
        tools.append({"codeExecution": {}})
    if request.web_search_options is not None:
        tools.append({"googleSearch": {}})
    return tools


def _tool_config(request: UnifiedRequest) -> Optional[Dict[str, Any]]:
    choice = request.tool_choice
    if choice is None:
        return None
    modes = {"auto": "AUTO", "none": "NONE", "required": "ANY"}
    calling: Dict[str, Any] = {}
    if choice.mode == "function" and choice.function_name:
        calling["mode"] = "ANY"
        calling["allowedFunctionNames"] = [choice.function_name]
    elif choice.mode in modes:
        calling["mode"] = modes[choice.mode]
    return {"functionCallingConfig": calling}


def build_gemini_body(request: UnifiedRequest, extensions: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """generateContent body shared by the direct API and the VertexAI gateway."""
    body: Dict[str, Any] = {
        "contents": build_gemini_contents(request.messages),
        "generationConfig": build_generation_config(request),
    }

    system_parts = [m.text() for m in request.messages if m.role == Role.SYSTEM]
    if system_parts:
        body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}

    tools = _build_tools(request)
    if tools:
        body["tools"] = tools
    tool_config = _tool_config(request)
    if tool_config is not None:
        body["toolConfig"] = tool_config
    body["safetySettings"] = merge_safety_settings(request.safety_settings)

    apply_extensions(body, extensions)
    return clean_payload(body)


class GeminiAdapter(BaseProviderAdapter):
    """Gemini generateContent adapter."""

    provider_type = "gemini"
    done_sentinel = None
    finish_reason_map = GEMINI_FINISH_REASONS

    def _model_path(self, filtered: FilteredRequest) -> str:
        method = "streamGenerateContent?alt=sse" if filtered.request.stream else "generateContent"
        return f"models/{filtered.request.model_id}:{method}"

    def build_url(self, filtered: FilteredRequest) -> str:
        endpoint = self.endpoint_for(filtered.profile, "chat", self._model_path(filtered))
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return build_versioned_url(filtered.profile.base_url, endpoint, default_version="v1beta", markers=("/v1",))

    def build_headers(self, profile: Profile) -> Dict[str, str]:
        return self.merged_headers(profile, {"x-goog-api-key": profile.primary_key()})

    def build_body(self, filtered: FilteredRequest) -> Dict[str, Any]:
        return build_gemini_body(filtered.request, filtered.extensions)

    @staticmethod
    def _tool_call_id(part_call: Dict[str, Any], index: int) -> str:
        return part_call.get("id") or f"call_{int(time.time() * 1000)}_{index}"

    @staticmethod
    def _code_part_text(part: Dict[str, Any]) -> Optional[str]:
        if part.get("executableCode"):
            code = part["executableCode"]
            language = (code.get("language") or "").lower()
            if language == "language_unspecified":
                language = ""
            return f"\n```{language}\n{code.get('code', '')}\n```\n"
        if part.get("codeExecutionResult"):
            result = part["codeExecutionResult"]
            outcome = "ok" if result.get("outcome") == "OUTCOME_OK" else "failed"
            return f"\n**Code execution result ({outcome}):**\n```\n{result.get('output', '')}\n```\n"
        return None

    def parse_stream_event(self, payload: str, accumulator: StreamAccumulator) -> None:
        data = self.load_event(payload)
        if data is None:
            return

        accumulator.set_usage(parse_gemini_usage(data.get("usageMetadata")))
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                logger.warning(f"Gemini blocked the prompt: {block_reason}")
                accumulator.set_finish_reason(FinishReason.CONTENT_FILTER)
            return

        candidate = candidates[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("text"):
                if part.get("thought"):
                    accumulator.append_reasoning(part["text"])
                else:
                    accumulator.append_text(part["text"])
            elif part.get("functionCall"):
                call = part["functionCall"]
                index = len(accumulator.finished_tool_calls)
                accumulator.add_tool_call(
                    self._tool_call_id(call, index),
                    call.get("name", ""),
                    json.dumps(call.get("args") or {}, ensure_ascii=False),
                )
            else:
                text = self._code_part_text(part)
                if text:
                    accumulator.append_text(text)

        accumulator.add_annotations(grounding_annotations(candidate.get("groundingMetadata")))
        accumulator.set_finish_reason(self.map_finish_reason(candidate.get("finishReason")))

    def parse_final(self, raw: Dict[str, Any]) -> UnifiedResponse:
        candidates = raw.get("candidates") if isinstance(raw, dict) else None
        if not candidates:
            block_reason = ((raw or {}).get("promptFeedback") or {}).get("blockReason") if isinstance(raw, dict) else None
            if block_reason:
                raise DecodeError(f"Gemini blocked the prompt: {block_reason}", payload=raw, provider=self.provider_type)
            raise DecodeError("Gemini response has no candidates", payload=raw, provider=self.provider_type)

        candidate = candidates[0]
        content_parts: List[str] = []
        thought_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("text"):
                (thought_parts if part.get("thought") else content_parts).append(part["text"])
            elif part.get("functionCall"):
                call = part["functionCall"]
                tool_calls.append(ToolCall(
                    id=self._tool_call_id(call, len(tool_calls)),
                    name=call.get("name", ""),
                    arguments_text=json.dumps(call.get("args") or {}, ensure_ascii=False),
                ))
            else:
                text = self._code_part_text(part)
                if text:
                    content_parts.append(text)

        return UnifiedResponse(
            content="".join(content_parts),
            reasoning_content="".join(thought_parts) or None,
            usage=parse_gemini_usage(raw.get("usageMetadata")),
            finish_reason=self.map_finish_reason(candidate.get("finishReason")),
            tool_calls=tool_calls,
            annotations=grounding_annotations(candidate.get("groundingMetadata")),
            model=raw.get("modelVersion"),
            logprobs=parse_gemini_logprobs(candidate.get("logprobsResult")),
        )
