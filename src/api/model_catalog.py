"""
模型列表获取
从各提供商的 models 接口拉取模型，解析为统一的 ModelDescriptor 并用元数据规则补充分组与能力
"""

from typing import Any, Callable, Dict, List, Optional

from src.core.model_metadata import MetadataRule, apply_metadata_rules
from src.core.transport import HttpTransport, RequestSpec
from src.formats.anthropic_adapter import ANTHROPIC_VERSION
from src.formats.capabilities import OPENAI_COMPATIBLE_TYPES, get_provider_capabilities
from src.formats.cohere_adapter import DEFAULT_BASE_URL as COHERE_BASE_URL
from src.formats.unified.adapters import build_versioned_url
from src.formats.unified.exceptions import DecodeError, LlmApiError, UnsupportedOperationError
from src.formats.unified.types import (
    ModelCapabilities,
    ModelDescriptor,
    ModelPricing,
    Profile,
    TokenLimits,
)
from src.utils.logger import setup_logger

logger = setup_logger("model_catalog")

GOOG_API_CLIENT = "google-genai-sdk/1.0.1 gl-python/3"

_OPENAI_FAMILY = OPENAI_COMPATIBLE_TYPES + ("openai-responses",)


def model_list_url(profile: Profile) -> str:
    """各提供商的模型列表接口地址"""
    provider_type = profile.type.lower()
    custom = (profile.custom_endpoints or {}).get("models")
    if custom and custom.startswith(("http://", "https://")):
        return custom

    if provider_type in _OPENAI_FAMILY:
        return build_versioned_url(profile.base_url, custom or "models")
    if provider_type == "claude":
        return build_versioned_url(profile.base_url, custom or "models", markers=("/v1",))
    if provider_type == "gemini":
        return build_versioned_url(profile.base_url, custom or "models", default_version="v1beta", markers=("/v1",))
    if provider_type == "cohere":
        return build_versioned_url(profile.base_url or COHERE_BASE_URL, custom or "models", markers=("/v1",))
    if provider_type == "vertexai":
        return build_versioned_url(profile.base_url, custom or "publishers/google/models", markers=("/v1",))
    raise UnsupportedOperationError(f"Provider type {profile.type!r} has no model listing", provider=profile.type)


def model_list_headers(profile: Profile) -> Dict[str, str]:
    """根据提供商类型构建请求头"""
    provider_type = profile.type.lower()
    api_key = profile.primary_key()
    headers = {"Content-Type": "application/json"}

    if provider_type == "claude":
        if api_key:
            headers["x-api-key"] = api_key
            headers["anthropic-version"] = ANTHROPIC_VERSION
    elif provider_type == "gemini":
        if api_key:
            headers["x-goog-api-key"] = api_key
        headers["x-goog-api-client"] = GOOG_API_CLIENT
    elif api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    if profile.custom_headers:
        headers.update(profile.custom_headers)
    return headers


# ==================== 响应解析 ====================

def parse_openai_models(data: Dict[str, Any]) -> List[ModelDescriptor]:
    """OpenAI /models，兼容 OpenRouter 的增强字段"""
    models = []
    for item in data.get("data") or []:
        if not item.get("id"):
            continue
        capabilities = None
        token_limits = None
        pricing = None

        if item.get("context_length"):
            token_limits = TokenLimits(
                context_length=item["context_length"],
                output=(item.get("top_provider") or {}).get("max_completion_tokens"),
            )

        architecture = item.get("architecture")
        supported = item.get("supported_parameters") or []
        if architecture or supported:
            input_modalities = (architecture or {}).get("input_modalities") or []
            capabilities = ModelCapabilities(
                vision=("image" in input_modalities) if architecture else None,
                tool_use=("tools" in supported) if supported else None,
                thinking=("reasoning" in supported or "include_reasoning" in supported) if supported else None,
                audio=("audio" in input_modalities) if architecture else None,
                document=("file" in input_modalities) if architecture else None,
            )

        raw_pricing = item.get("pricing")
        if raw_pricing:
            pricing = ModelPricing(
                prompt=raw_pricing.get("prompt"),
                completion=raw_pricing.get("completion"),
                request=raw_pricing.get("request"),
                image=raw_pricing.get("image"),
            )

        models.append(ModelDescriptor(
            id=item["id"],
            name=item.get("name") or item["id"],
            provider=item.get("owned_by") or "openai",
            capabilities=capabilities,
            token_limits=token_limits,
            pricing=pricing,
            description=item.get("description"),
        ))
    return models


def parse_claude_models(data: Dict[str, Any]) -> List[ModelDescriptor]:
    models = []
    for item in data.get("data") or []:
        if item.get("type") != "model":
            continue
        model_id = item["id"]
        models.append(ModelDescriptor(
            id=model_id,
            name=item.get("display_name") or model_id,
            provider="anthropic",
            capabilities=ModelCapabilities(
                vision=any(tier in model_id for tier in ("opus", "sonnet", "haiku")),
            ),
            description=item.get("description"),
        ))
    return models


def parse_gemini_models(data: Dict[str, Any]) -> List[ModelDescriptor]:
    models = []
    for item in data.get("models") or []:
        model_id = (item.get("name") or "").replace("models/", "", 1)
        if not model_id:
            continue
        methods = item.get("supportedGenerationMethods") or []
        models.append(ModelDescriptor(
            id=model_id,
            name=item.get("displayName") or model_id,
            provider="gemini",
            capabilities=ModelCapabilities(
                vision="generateContent" in methods and "embedding" not in model_id,
                thinking=True if item.get("thinking") is True else None,
                embedding=True if "embedContent" in methods else None,
            ),
            token_limits=TokenLimits(
                context_length=item.get("inputTokenLimit"),
                output=item.get("outputTokenLimit"),
            ),
            description=item.get("description"),
        ))
    return models


def parse_cohere_models(data: Dict[str, Any]) -> List[ModelDescriptor]:
    models = []
    for item in data.get("models") or []:
        name = item.get("name")
        if not name:
            continue
        features = item.get("features") or []
        endpoints = item.get("endpoints") or []
        models.append(ModelDescriptor(
            id=name,
            name=name,
            provider="cohere",
            capabilities=ModelCapabilities(
                vision=True if "vision" in features else None,
                tool_use=True if ("tools" in features or "strict_tools" in features) else None,
                embedding=True if "embed" in endpoints else None,
            ),
            token_limits=TokenLimits(context_length=item.get("context_length")),
        ))
    return models


def parse_vertexai_models(data: Dict[str, Any]) -> List[ModelDescriptor]:
    models = []
    for item in data.get("publisherModels") or data.get("models") or []:
        model_id = (item.get("name") or "").split("/")[-1]
        if not model_id:
            continue
        models.append(ModelDescriptor(
            id=model_id,
            name=item.get("displayName") or model_id,
            provider="google",
            capabilities=ModelCapabilities(vision=True),
        ))
    return models


_PARSERS: Dict[str, Callable[[Dict[str, Any]], List[ModelDescriptor]]] = {
    "claude": parse_claude_models,
    "gemini": parse_gemini_models,
    "cohere": parse_cohere_models,
    "vertexai": parse_vertexai_models,
    **{alias: parse_openai_models for alias in _OPENAI_FAMILY},
}


def parse_models_response(
    data: Any,
    provider_type: str,
    rules: Optional[List[MetadataRule]] = None,
) -> List[ModelDescriptor]:
    """解析并用规则补充，按 group、id 排序"""
    parser = _PARSERS.get(provider_type.lower())
    if parser is None:
        raise UnsupportedOperationError(f"Provider type {provider_type!r} has no model listing", provider=provider_type)
    if not isinstance(data, dict):
        raise DecodeError("Model listing is not a JSON object", payload=data, provider=provider_type)

    models = [apply_metadata_rules(m, rules) for m in parser(data)]
    models.sort(key=lambda m: (m.group or "", m.id))
    return models


async def fetch_models(
    profile: Profile,
    transport: Optional[HttpTransport] = None,
    rules: Optional[List[MetadataRule]] = None,
) -> List[ModelDescriptor]:
    """从提供商 API 获取模型列表"""
    caps = get_provider_capabilities(profile.type)
    if caps is None or not caps.model_list:
        raise UnsupportedOperationError(f"Provider type {profile.type!r} has no model listing", provider=profile.type)

    url = model_list_url(profile)
    logger.info(f"Fetching model list for profile {profile.name or profile.id or profile.type}: {url}")

    transport = transport or HttpTransport()
    spec = RequestSpec(method="GET", headers=model_list_headers(profile), relay_strategy=profile.relay_strategy)
    try:
        handle = await transport.send(url, spec)
        data = await handle.json()
    except LlmApiError as e:
        logger.error(f"Failed to fetch model list from {profile.type}: {e}")
        raise

    models = parse_models_response(data, profile.type, rules)
    logger.info(f"Retrieved {len(models)} models from {profile.type}")
    return models
