"""
Unified Chat Types

Provider-agnostic request/response model shared by every adapter.
"""

from enum import Enum
from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable, Dict, List, Optional, Union
import re

from .exceptions import ToolCallMismatchError


class Role(str, Enum):
    """Message author role."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ContentBlockType(str, Enum):
    """Typed content block variants inside a message."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"


class FinishReason(str, Enum):
    """Normalized reason why generation ended."""

    STOP = "stop"
    LENGTH = "length"
    MAX_TOKENS = "max_tokens"
    CONTENT_FILTER = "content_filter"
    TOOL_CALLS = "tool_calls"
    END_TURN = "end_turn"
    STOP_SEQUENCE = "stop_sequence"
    ERROR = "error"


@dataclass
class ContentBlock:
    """One typed block of message content.

    Media blocks carry base64 ``data`` plus ``mime_type``, or a remote ``url``.
    """

    type: ContentBlockType

    # TEXT
    text: Optional[str] = None

    # IMAGE / AUDIO / VIDEO / DOCUMENT
    data: Optional[str] = None
    mime_type: Optional[str] = None
    url: Optional[str] = None
    file_name: Optional[str] = None
    video_metadata: Optional[Dict[str, Any]] = None

    # TOOL_USE
    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None

    # TOOL_RESULT
    tool_result_id: Optional[str] = None
    tool_result_content: Union[str, List["ContentBlock"], None] = None
    is_error: bool = False

    # Anthropic prompt caching passthrough
    cache_control: Optional[Dict[str, Any]] = None

    @classmethod
    def text_block(cls, text: str, cache_control: Optional[Dict[str, Any]] = None) -> "ContentBlock":
        return cls(type=ContentBlockType.TEXT, text=text, cache_control=cache_control)

    @classmethod
    def image_block(cls, data: str, mime_type: Optional[str] = None) -> "ContentBlock":
        return cls(type=ContentBlockType.IMAGE, data=data, mime_type=mime_type)

    @classmethod
    def audio_block(cls, data: str, mime_type: str = "audio/wav") -> "ContentBlock":
        return cls(type=ContentBlockType.AUDIO, data=data, mime_type=mime_type)

    @classmethod
    def video_block(
        cls,
        data: Optional[str] = None,
        mime_type: str = "video/mp4",
        url: Optional[str] = None,
        video_metadata: Optional[Dict[str, Any]] = None,
    ) -> "ContentBlock":
        return cls(
            type=ContentBlockType.VIDEO,
            data=data,
            mime_type=mime_type,
            url=url,
            video_metadata=video_metadata,
        )

    @classmethod
    def document_block(
        cls,
        data: Optional[str] = None,
        mime_type: str = "application/pdf",
        url: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> "ContentBlock":
        return cls(
            type=ContentBlockType.DOCUMENT,
            data=data,
            mime_type=mime_type,
            url=url,
            file_name=file_name,
        )

    @classmethod
    def tool_use_block(cls, tool_use_id: str, name: str, tool_input: Optional[Dict[str, Any]] = None) -> "ContentBlock":
        return cls(
            type=ContentBlockType.TOOL_USE,
            tool_use_id=tool_use_id,
            tool_name=name,
            tool_input=tool_input or {},
        )

    @classmethod
    def tool_result_block(
        cls,
        tool_result_id: str,
        content: Union[str, List["ContentBlock"]],
        is_error: bool = False,
        tool_name: Optional[str] = None,
    ) -> "ContentBlock":
        return cls(
            type=ContentBlockType.TOOL_RESULT,
            tool_result_id=tool_result_id,
            tool_result_content=content,
            is_error=is_error,
            tool_name=tool_name,
        )

    def result_text(self) -> str:
        """Flatten a tool result into plain text."""
        content = self.tool_result_content
        if content is None:
            return ""
        if isinstance(content, str):
            return content
        return "".join(block.text or "" for block in content if block.type == ContentBlockType.TEXT)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentBlock":
        """Create from a loosely-typed dict (camelCase or snake_case keys)."""
        block_type = ContentBlockType(data.get("type", "text"))
        source = data.get("source") or {}

        if block_type == ContentBlockType.TEXT:
            return cls.text_block(data.get("text", ""), data.get("cacheControl") or data.get("cache_control"))
        if block_type == ContentBlockType.TOOL_USE:
            return cls.tool_use_block(
                data.get("toolUseId") or data.get("tool_use_id") or data.get("id") or "",
                data.get("toolName") or data.get("tool_name") or data.get("name") or "",
                data.get("toolInput") or data.get("tool_input") or data.get("input") or {},
            )
        if block_type == ContentBlockType.TOOL_RESULT:
            raw_content = data.get("toolResultContent", data.get("tool_result_content", data.get("content", "")))
            if isinstance(raw_content, list):
                raw_content = [cls.from_dict(item) for item in raw_content]
            return cls.tool_result_block(
                data.get("toolResultId") or data.get("tool_result_id") or data.get("tool_use_id") or "",
                raw_content,
                is_error=bool(data.get("isError") or data.get("is_error")),
                tool_name=data.get("toolName") or data.get("tool_name"),
            )

        return cls(
            type=block_type,
            data=data.get("imageBase64") or data.get("data") or source.get("data"),
            mime_type=data.get("mimeType") or data.get("mime_type") or source.get("media_type"),
            url=data.get("url") or source.get("url"),
            file_name=data.get("fileName") or data.get("file_name"),
            video_metadata=data.get("videoMetadata") or data.get("video_metadata"),
            cache_control=data.get("cacheControl") or data.get("cache_control"),
        )


@dataclass
class Message:
    """One conversation turn."""

    role: Role
    content: Union[str, List[ContentBlock]]
    # DeepSeek 续写：assistant 消息作为前缀
    prefix: bool = False

    def blocks(self) -> List[ContentBlock]:
        if isinstance(self.content, str):
            return [ContentBlock.text_block(self.content)]
        return list(self.content)

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(b.text or "" for b in self.content if b.type == ContentBlockType.TEXT)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        content = data.get("content", "")
        if isinstance(content, list):
            content = [c if isinstance(c, ContentBlock) else ContentBlock.from_dict(c) for c in content]
        return cls(role=Role(data.get("role", "user")), content=content, prefix=bool(data.get("prefix", False)))


@dataclass
class ToolDefinition:
    """Function tool exposed to the model."""

    name: str
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    strict: Optional[bool] = None

    def schema(self) -> Dict[str, Any]:
        return self.parameters or {"type": "object", "properties": {}}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolDefinition":
        func = data.get("function") if isinstance(data.get("function"), dict) else data
        return cls(
            name=func.get("name", ""),
            description=func.get("description"),
            parameters=func.get("parameters") or func.get("input_schema"),
            strict=func.get("strict"),
        )


@dataclass
class ToolChoice:
    """Tool selection policy: auto / none / required / a named function."""

    mode: str = "auto"
    function_name: Optional[str] = None

    @classmethod
    def parse(cls, value: Any) -> Optional["ToolChoice"]:
        if value is None or isinstance(value, ToolChoice):
            return value
        if isinstance(value, str):
            return cls(mode=value)
        if isinstance(value, dict) and value.get("type") == "function":
            return cls(mode="function", function_name=(value.get("function") or {}).get("name"))
        return None


StreamCallback = Callable[[str], None]


@dataclass(frozen=True)
class UnifiedRequest:
    """Immutable provider-agnostic request.

    Named optional fields cover the fixed schema; anything else lives in
    ``extensions`` and is transmitted as top-level wire fields.
    """

    model_id: str
    messages: List[Message]

    # Core
    stream: bool = False
    on_stream: Optional[StreamCallback] = None
    on_reasoning_stream: Optional[StreamCallback] = None
    cancel_token: Any = None
    timeout_ms: Optional[int] = None

    # Sampling
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    max_completion_tokens: Optional[int] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    seed: Optional[int] = None
    stop: Union[str, List[str], None] = None
    n: Optional[int] = None
    logprobs: Optional[bool] = None
    top_logprobs: Optional[int] = None
    response_format: Optional[Dict[str, Any]] = None

    # Tools
    tools: Optional[List[ToolDefinition]] = None
    tool_choice: Optional[ToolChoice] = None
    parallel_tool_calls: Optional[bool] = None

    # Reasoning / search / multimodal output
    reasoning_effort: Optional[str] = None
    thinking_enabled: Optional[bool] = None
    thinking_budget: Optional[int] = None
    thinking_level: Optional[str] = None
    include_thoughts: Optional[bool] = None
    web_search_options: Optional[Dict[str, Any]] = None
    modalities: Optional[List[str]] = None
    audio: Optional[Dict[str, Any]] = None
    prediction: Optional[Dict[str, Any]] = None

    # OpenAI family
    service_tier: Optional[str] = None
    logit_bias: Optional[Dict[str, float]] = None
    store: Optional[bool] = None
    user: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    stream_options: Optional[Dict[str, Any]] = None

    # Claude family
    stop_sequences: Optional[List[str]] = None
    claude_metadata: Optional[Dict[str, Any]] = None

    # Gemini family
    safety_settings: Optional[List[Dict[str, Any]]] = None
    enable_code_execution: Optional[bool] = None
    speech_config: Optional[Dict[str, Any]] = None
    response_modalities: Optional[List[str]] = None
    media_resolution: Optional[str] = None

    # Transport flags
    force_relay: bool = False
    tls_relax: bool = False
    http1_only: bool = False
    proxy: Optional[str] = None

    extensions: Dict[str, Any] = field(default_factory=dict)

    def with_changes(self, **changes: Any) -> "UnifiedRequest":
        return replace(self, **changes)

    def iter_blocks(self):
        for message in self.messages:
            if not isinstance(message.content, str):
                for block in message.content:
                    yield message, block

    def validate_tool_references(self) -> None:
        """Every tool_result must answer a tool_use that appears earlier."""
        seen = set()
        unmatched: List[str] = []
        for _message, block in self.iter_blocks():
            if block.type == ContentBlockType.TOOL_USE and block.tool_use_id:
                seen.add(block.tool_use_id)
            elif block.type == ContentBlockType.TOOL_RESULT and block.tool_result_id not in seen:
                unmatched.append(block.tool_result_id or "")
        if unmatched:
            raise ToolCallMismatchError(unmatched)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnifiedRequest":
        """Build from a camelCase or snake_case option dict.

        Unknown keys are kept verbatim in ``extensions``.
        """
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        extensions: Dict[str, Any] = dict(data.get("extensions") or {})

        for key, value in data.items():
            if key == "extensions":
                continue
            name = _OPTION_ALIASES.get(key) or _camel_to_snake(key)
            if name in known:
                kwargs[name] = value
            else:
                extensions[key] = value

        kwargs["messages"] = [
            m if isinstance(m, Message) else Message.from_dict(m) for m in kwargs.get("messages") or []
        ]
        if kwargs.get("tools"):
            kwargs["tools"] = [t if isinstance(t, ToolDefinition) else ToolDefinition.from_dict(t) for t in kwargs["tools"]]
        if "tool_choice" in kwargs:
            kwargs["tool_choice"] = ToolChoice.parse(kwargs["tool_choice"])
        kwargs.setdefault("model_id", "")
        return cls(extensions=extensions, **kwargs)


_OPTION_ALIASES = {
    "modelId": "model_id",
    "model": "model_id",
    "signal": "cancel_token",
    "timeout": "timeout_ms",
    "forceProxy": "force_relay",
    "relaxIdCerts": "tls_relax",
}


def _camel_to_snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


@dataclass(frozen=True)
class Profile:
    """One configured provider endpoint. Owned by the caller, read-only here."""

    type: str
    base_url: str
    api_keys: List[str] = field(default_factory=list)
    id: str = ""
    name: str = ""
    custom_headers: Dict[str, str] = field(default_factory=dict)
    custom_endpoints: Dict[str, str] = field(default_factory=dict)
    relay_strategy: Optional[str] = None

    def primary_key(self) -> str:
        return self.api_keys[0] if self.api_keys else ""


@dataclass(frozen=True)
class Usage:
    """Token usage information."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: Optional[int] = None
    reasoning_tokens: Optional[int] = None
    prompt_audio_tokens: Optional[int] = None
    completion_audio_tokens: Optional[int] = None
    accepted_prediction_tokens: Optional[int] = None
    rejected_prediction_tokens: Optional[int] = None
    estimated: bool = False

    @classmethod
    def of(cls, prompt_tokens: Optional[int], completion_tokens: Optional[int], total_tokens: Optional[int] = None, **extra: Any) -> "Usage":
        prompt = int(prompt_tokens or 0)
        completion = int(completion_tokens or 0)
        total = int(total_tokens) if total_tokens else prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total, **extra)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass(frozen=True)
class ToolCall:
    """A finalized model tool invocation."""

    id: str
    name: str
    arguments_text: str = ""
    type: str = "function"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": self.type, "function": {"name": self.name, "arguments": self.arguments_text}}


@dataclass(frozen=True)
class UnifiedResponse:
    """Immutable unified response value."""

    content: str = ""
    reasoning_content: Optional[str] = None
    usage: Optional[Usage] = None
    finish_reason: Optional[FinishReason] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    annotations: List[Dict[str, Any]] = field(default_factory=list)
    is_stream: bool = False
    model: Optional[str] = None
    refusal: Optional[str] = None
    stop_sequence: Optional[str] = None
    system_fingerprint: Optional[str] = None
    service_tier: Optional[str] = None
    logprobs: Optional[Any] = None
    audio: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"content": self.content, "isStream": self.is_stream}
        if self.reasoning_content:
            result["reasoningContent"] = self.reasoning_content
        if self.usage is not None:
            result["usage"] = self.usage.to_dict()
        if self.finish_reason is not None:
            result["finishReason"] = self.finish_reason.value
        if self.tool_calls:
            result["toolCalls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.annotations:
            result["annotations"] = list(self.annotations)
        for key, value in (
            ("model", self.model),
            ("refusal", self.refusal),
            ("stopSequence", self.stop_sequence),
            ("systemFingerprint", self.system_fingerprint),
            ("serviceTier", self.service_tier),
            ("logprobs", self.logprobs),
            ("audio", self.audio),
        ):
            if value is not None:
                result[key] = value
        return result


@dataclass
class ModelCapabilities:
    """Model-level capability flags. ``None`` means unknown."""

    vision: Optional[bool] = None
    tool_use: Optional[bool] = None
    thinking: Optional[bool] = None
    web_search: Optional[bool] = None
    code_execution: Optional[bool] = None
    json_output: Optional[bool] = None
    image_generation: Optional[bool] = None
    audio: Optional[bool] = None
    video: Optional[bool] = None
    document: Optional[bool] = None
    embedding: Optional[bool] = None

    def to_dict(self) -> Dict[str, bool]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ModelCapabilities":
        if not data:
            return cls()
        names = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            name = _camel_to_snake(key)
            if name in names and value is not None:
                values[name] = bool(value)
        return cls(**values)


@dataclass
class TokenLimits:
    context_length: Optional[int] = None
    output: Optional[int] = None


@dataclass
class ModelPricing:
    prompt: Optional[str] = None
    completion: Optional[str] = None
    request: Optional[str] = None
    image: Optional[str] = None


@dataclass
class ModelDescriptor:
    """Normalized entry of a provider model listing."""

    id: str
    name: str
    provider: str
    group: Optional[str] = None
    capabilities: Optional[ModelCapabilities] = None
    token_limits: Optional[TokenLimits] = None
    pricing: Optional[ModelPricing] = None
    description: Optional[str] = None
