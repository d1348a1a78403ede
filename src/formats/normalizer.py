"""
请求规范化
按能力矩阵过滤统一请求，处理扩展参数合并
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from src.core.model_metadata import MetadataRule
from src.formats.capabilities import (
    ModelFamily,
    ProviderCapabilities,
    classify_model_family,
    get_provider_capabilities,
)
from src.formats.unified.types import ModelCapabilities, ModelDescriptor, Profile, UnifiedRequest
from src.utils.logger import setup_logger

logger = setup_logger("normalizer")

# 旧版把自定义参数嵌套在该容器里
LEGACY_CUSTOM_KEY = "custom"

# 不允许出现在最终请求体里的内部字段
INTERNAL_KEYS = (
    "profileId",
    "onStream",
    "onReasoningStream",
    "signal",
    "timeout",
    "thinkingEnabled",
    "thinkingBudget",
    "thinkingLevel",
    "reasoningEffort",
    "includeThoughts",
    "forceProxy",
    "relaxIdCerts",
    "http1Only",
    "tlsRelax",
    LEGACY_CUSTOM_KEY,
)

_OPENAI_ONLY = (ModelFamily.OPENAI,)
_CLAUDE_ONLY = (ModelFamily.CLAUDE,)
_GEMINI_ONLY = (ModelFamily.GEMINI,)
_INHERITING_FAMILIES = (ModelFamily.COHERE, ModelFamily.DEEPSEEK, ModelFamily.QWEN)

# 字段 -> (提供商开关, 模型能力开关, 家族限制)
FieldGate = Tuple[str, Optional[str], Optional[Tuple[ModelFamily, ...]]]

FIELD_GATES: Dict[str, FieldGate] = {
    "temperature": ("temperature", None, None),
    "max_tokens": ("max_tokens", None, None),
    "top_p": ("top_p", None, None),
    "top_k": ("top_k", None, None),
    "frequency_penalty": ("frequency_penalty", None, None),
    "presence_penalty": ("presence_penalty", None, None),
    "seed": ("seed", None, None),
    "stop": ("stop", None, None),
    "max_completion_tokens": ("max_completion_tokens", None, None),
    "logprobs": ("logprobs", None, None),
    "top_logprobs": ("top_logprobs", None, None),
    "response_format": ("response_format", None, None),
    "tools": ("tools", "tool_use", None),
    "tool_choice": ("tool_choice", "tool_use", None),
    "parallel_tool_calls": ("parallel_tool_calls", "tool_use", None),
    "reasoning_effort": ("reasoning_effort", "thinking", None),
    "thinking_enabled": ("thinking", "thinking", None),
    "thinking_budget": ("thinking", "thinking", None),
    "thinking_level": ("thinking", "thinking", None),
    "include_thoughts": ("thinking", "thinking", None),
    "web_search_options": ("web_search", "web_search", None),
    "modalities": ("modalities", None, None),
    "audio": ("audio", None, None),
    "prediction": ("prediction", None, None),
    "n": ("n", None, _OPENAI_ONLY),
    "logit_bias": ("logit_bias", None, _OPENAI_ONLY),
    "store": ("store", None, _OPENAI_ONLY),
    "user": ("user", None, _OPENAI_ONLY),
    "service_tier": ("service_tier", None, _OPENAI_ONLY),
    "stream_options": ("stream_options", None, _OPENAI_ONLY),
    "metadata": ("metadata", None, _OPENAI_ONLY),
    "stop_sequences": ("stop_sequences", None, _CLAUDE_ONLY),
    "claude_metadata": ("claude_metadata", None, _CLAUDE_ONLY),
    "safety_settings": ("safety_settings", None, _GEMINI_ONLY),
    "enable_code_execution": ("code_execution", "code_execution", _GEMINI_ONLY),
    "speech_config": ("speech_config", None, _GEMINI_ONLY),
    "response_modalities": ("response_modalities", None, _GEMINI_ONLY),
    "media_resolution": ("media_resolution", None, _GEMINI_ONLY),
}


@dataclass(frozen=True)
class FilteredRequest:
    """Provider-ready request: unsupported fields cleared, family resolved once."""

    request: UnifiedRequest
    profile: Profile
    family: ModelFamily
    model: Optional[ModelDescriptor] = None
    dropped: List[str] = field(default_factory=list)

    @property
    def extensions(self) -> Dict[str, Any]:
        return self.request.extensions


def merge_extensions(base: Dict[str, Any], overlay: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """浅合并：同名且双方都是 dict 时合并一层，否则后者覆盖前者"""
    merged = dict(base)
    for key, value in (overlay or {}).items():
        if value is None:
            continue
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = {**current, **value}
        else:
            merged[key] = value
    return merged


def apply_extensions(body: Dict[str, Any], extensions: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """把扩展参数作为顶层字段写入请求体"""
    if not extensions:
        return body
    merged = merge_extensions(body, extensions)
    body.clear()
    body.update(merged)
    return body


def flatten_legacy_custom(request: UnifiedRequest) -> UnifiedRequest:
    """把旧版嵌套的 custom 容器展平到扩展参数，仅做兼容处理"""
    legacy = request.extensions.get(LEGACY_CUSTOM_KEY)
    if legacy is None:
        return request

    logger.warning(
        "Nested 'custom' parameter container is deprecated; its keys are flattened "
        "into top-level extension parameters"
    )
    remaining = {k: v for k, v in request.extensions.items() if k != LEGACY_CUSTOM_KEY}
    if isinstance(legacy, dict):
        # 显式写在顶层的扩展参数优先
        extensions = merge_extensions(legacy, remaining)
    else:
        extensions = remaining
    return request.with_changes(extensions=extensions)


def clean_payload(body: Dict[str, Any]) -> Dict[str, Any]:
    """删除内部字段"""
    for key in INTERNAL_KEYS:
        body.pop(key, None)
    return body


def _model_allows(capabilities: Optional[ModelCapabilities], flag: Optional[str]) -> bool:
    # None 表示未知，只有显式 False 才排除
    if flag is None or capabilities is None:
        return True
    return getattr(capabilities, flag, None) is not False


def _family_allows(
    allowed: Optional[Tuple[ModelFamily, ...]],
    family: ModelFamily,
    caps: ProviderCapabilities,
) -> bool:
    if allowed is None or family == ModelFamily.UNKNOWN:
        return True
    if family in allowed:
        return True
    # 没有专属请求形态的家族沿用提供商自身的形态
    return family in _INHERITING_FAMILIES and caps.native_family in allowed


def _is_set(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, dict)) and not value:
        return False
    return True


def normalize(
    request: UnifiedRequest,
    profile: Profile,
    model: Optional[ModelDescriptor] = None,
    rules: Optional[List[MetadataRule]] = None,
    family: Optional[ModelFamily] = None,
) -> FilteredRequest:
    """按提供商能力 + 模型能力 + 模型家族过滤可选字段

    核心字段与扩展参数始终保留；未知提供商不做过滤。
    """
    if family is None:
        family = classify_model_family(request.model_id, profile.type, rules)
    request = flatten_legacy_custom(request)

    caps = get_provider_capabilities(profile.type)
    if caps is None:
        logger.debug(f"Unknown provider type {profile.type!r}, passing all parameters through")
        return FilteredRequest(request=request, profile=profile, family=family, model=model)

    model_caps = model.capabilities if model is not None else None
    changes: Dict[str, Any] = {}
    dropped: List[str] = []

    for name, (provider_flag, model_flag, families) in FIELD_GATES.items():
        if not _is_set(getattr(request, name)):
            continue
        allowed = (
            getattr(caps, provider_flag)
            and _model_allows(model_caps, model_flag)
            and _family_allows(families, family, caps)
        )
        if not allowed:
            changes[name] = None
            dropped.append(name)

    if dropped:
        logger.debug(
            f"Dropped unsupported parameters for {profile.type}/{request.model_id} "
            f"(family={family.value}): {dropped}"
        )
        request = request.with_changes(**changes)

    return FilteredRequest(request=request, profile=profile, family=family, model=model, dropped=dropped)
