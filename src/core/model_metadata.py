"""
模型元数据规则引擎
按优先级匹配模型 ID / 提供商，为模型补充分组与能力信息
"""

import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from src.formats.unified.types import ModelCapabilities, ModelDescriptor
from src.utils.logger import setup_logger

logger = setup_logger("model_metadata")

MATCH_TYPES = ("model", "modelPrefix", "provider")


@dataclass
class MetadataRule:
    """One metadata rule.

    match_type:
        model       - exact id match, or case-insensitive regex when use_regex
        modelPrefix - case-insensitive substring match (ids like ``vendor/model``),
                      or regex when use_regex
        provider    - case-insensitive equality with the provider tag

    exclusive: once this rule matches, lower-priority matches contribute nothing.
    """
    id: str
    match_type: str
    match_value: str
    properties: Dict[str, Any] = field(default_factory=dict)
    use_regex: bool = False
    priority: int = 0
    enabled: bool = True
    exclusive: bool = False
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetadataRule":
        match_type = data.get("matchType") or data.get("match_type") or "model"
        if match_type not in MATCH_TYPES:
            logger.warning(f"Metadata rule {data.get('id', '')} has unsupported match type '{match_type}', it will never match")
        return cls(
            id=data.get("id", ""),
            match_type=match_type,
            match_value=data.get("matchValue") or data.get("match_value") or "",
            properties=dict(data.get("properties") or {}),
            use_regex=bool(data.get("useRegex", data.get("use_regex", False))),
            priority=int(data.get("priority") or 0),
            enabled=data.get("enabled") is not False,
            exclusive=bool(data.get("exclusive", False)),
            description=data.get("description", ""),
        )


def _regex_search(rule: MetadataRule, value: str) -> bool:
    try:
        return re.search(rule.match_value, value, re.IGNORECASE) is not None
    except re.error as e:
        logger.warning(f"Invalid regex in metadata rule {rule.id}: {rule.match_value} ({e})")
        return False


def test_rule_match(rule: MetadataRule, model_id: str, provider: Optional[str] = None) -> bool:
    """判断单条规则是否命中"""
    if rule.match_type == "model":
        if rule.use_regex:
            return _regex_search(rule, model_id)
        return model_id == rule.match_value
    if rule.match_type == "modelPrefix":
        if rule.use_regex:
            return _regex_search(rule, model_id)
        return rule.match_value.lower() in model_id.lower()
    if rule.match_type == "provider":
        return bool(provider) and provider.lower() == rule.match_value.lower()
    # 旧版 modelGroup 等类型不再参与匹配
    return False


# pytest 会收集 test_ 前缀的模块级函数，显式标记为非测试
test_rule_match.__test__ = False  # type: ignore[attr-defined]


def _sorted_rules(rules: List[MetadataRule]) -> List[MetadataRule]:
    return sorted((r for r in rules if r.enabled), key=lambda r: r.priority, reverse=True)


def get_matched_properties(
    model_id: str,
    provider: Optional[str] = None,
    rules: Optional[List[MetadataRule]] = None,
) -> Dict[str, Any]:
    """按优先级从高到低合成属性，每个属性（及每个能力键）取第一条命中规则的值"""
    rules = DEFAULT_METADATA_RULES if rules is None else rules
    resolved: Dict[str, Any] = {}
    capabilities: Dict[str, Any] = {}

    matched = [rule for rule in _sorted_rules(rules) if test_rule_match(rule, model_id, provider)]
    exclusive = next((rule for rule in matched if rule.exclusive), None)
    if exclusive is not None:
        matched = [rule for rule in matched if rule.priority >= exclusive.priority]

    for rule in matched:
        for key, value in rule.properties.items():
            if key == "capabilities" and isinstance(value, dict):
                for cap_key, cap_value in value.items():
                    capabilities.setdefault(cap_key, cap_value)
            elif key not in resolved:
                resolved[key] = value

    if capabilities:
        resolved["capabilities"] = capabilities
    return resolved


def apply_metadata_rules(
    descriptor: ModelDescriptor,
    rules: Optional[List[MetadataRule]] = None,
) -> ModelDescriptor:
    """用规则覆盖/补充模型的 group 与 capabilities，返回新的描述对象"""
    props = get_matched_properties(descriptor.id, descriptor.provider, rules)
    if not props:
        return descriptor

    group = props.get("group") or descriptor.group
    capabilities = descriptor.capabilities
    if props.get("capabilities"):
        merged = (capabilities.to_dict() if capabilities else {})
        merged.update(ModelCapabilities.from_dict(props["capabilities"]).to_dict())
        capabilities = ModelCapabilities.from_dict(merged)

    return replace(
        descriptor,
        group=group,
        capabilities=capabilities,
        description=descriptor.description or props.get("description"),
    )


def _provider_rule(value: str, group: str) -> MetadataRule:
    return MetadataRule(
        id=f"provider-{value}",
        match_type="provider",
        match_value=value,
        properties={"group": group},
        priority=10,
    )


def _prefix_rule(value: str, group: str, capabilities: Optional[Dict[str, bool]] = None, use_regex: bool = False) -> MetadataRule:
    properties: Dict[str, Any] = {"group": group}
    if capabilities:
        properties["capabilities"] = capabilities
    return MetadataRule(
        id=f"model-prefix-{value.strip('^-').replace('|', '-')}",
        match_type="modelPrefix",
        match_value=value,
        properties=properties,
        use_regex=use_regex,
        priority=20,
    )


def _capability_rule(rule_id: str, pattern: str, capabilities: Dict[str, bool]) -> MetadataRule:
    return MetadataRule(
        id=rule_id,
        match_type="modelPrefix",
        match_value=pattern,
        properties={"capabilities": capabilities},
        use_regex=True,
        priority=5,
    )


DEFAULT_METADATA_RULES: List[MetadataRule] = [
    # 提供商级别（优先级 10）
    _provider_rule("openai", "OpenAI"),
    _provider_rule("openai-responses", "OpenAI Responses"),
    _provider_rule("anthropic", "Claude"),
    _provider_rule("claude", "Claude"),
    _provider_rule("google", "Gemini"),
    _provider_rule("gemini", "Gemini"),
    _provider_rule("cohere", "Cohere"),
    _provider_rule("deepseek", "DeepSeek"),
    _provider_rule("qwen", "Qwen"),
    _provider_rule("mistral", "Mistral"),
    _provider_rule("xai", "xAI"),
    _provider_rule("groq", "Groq"),
    _provider_rule("openrouter", "OpenRouter"),
    _provider_rule("siliconflow", "SiliconFlow"),

    # 模型前缀（优先级 20）
    _prefix_rule("gpt-", "OpenAI", {"vision": True, "tool_use": True}),
    _prefix_rule("chatgpt-", "OpenAI"),
    _prefix_rule(r"(^|/)o[134](-|$)", "OpenAI", {"thinking": True, "tool_use": True}, use_regex=True),
    _prefix_rule("claude-", "Claude", {"vision": True, "thinking": True, "tool_use": True}),
    _prefix_rule("gemini-", "Gemini", {"vision": True, "thinking": True, "tool_use": True, "code_execution": True}),
    _prefix_rule("gemma-", "Gemma"),
    _prefix_rule("deepseek-", "DeepSeek", {"thinking": True}),
    _prefix_rule("qwen", "Qwen"),
    _prefix_rule("command", "Cohere", {"tool_use": True}),
    _prefix_rule("glm-", "Zhipu"),
    _prefix_rule("grok-", "xAI"),
    _prefix_rule("mistral", "Mistral"),

    # 能力关键字（优先级 5）
    _capability_rule("capability-vl", r"[-_.]vl([-_.]|$)", {"vision": True}),
    _capability_rule("capability-vision", r"vision|visual|multimodal|vlm|omni", {"vision": True}),
    _capability_rule("capability-tools", r"tools?([-_.]|$)|function|[-_.]fc([-_.]|$)", {"tool_use": True}),
    _capability_rule("capability-thinking", r"think|reason|(^|[-_/])r1([-_.]|$)", {"thinking": True}),
    _capability_rule("capability-code-execution", r"code-execution", {"code_execution": True}),
    _capability_rule("capability-web-search", r"search|web-search|grounded|online", {"web_search": True}),
    _capability_rule("capability-embedding", r"embed", {"embedding": True}),
    _capability_rule("capability-image-generation", r"dall-e|image-gen|imagen|flux|stable-diffusion", {"image_generation": True}),
]
