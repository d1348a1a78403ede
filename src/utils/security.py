"""
日志脱敏工具
"""
import json
from typing import Any, Dict

SENSITIVE_KEYS = (
    "authorization",
    "x-api-key",
    "x-goog-api-key",
    "api-key",
    "api_key",
    "apikey",
    "key",
    "token",
    "secret",
    "password",
    "cookie",
)


def mask_api_key(api_key: str) -> str:
    """保留首尾少量字符的 API Key 掩码"""
    if not api_key:
        return ""
    if len(api_key) <= 8:
        return "***"
    return f"{api_key[:4]}...{api_key[-4:]}"


def _is_sensitive(key: str) -> bool:
    lowered = str(key).lower()
    return any(lowered == k or lowered.endswith(k) for k in SENSITIVE_KEYS)


def mask_sensitive_data(data: Any) -> Any:
    """递归掩码字典中的敏感字段"""
    if isinstance(data, dict):
        masked: Dict[str, Any] = {}
        for key, value in data.items():
            if _is_sensitive(key) and isinstance(value, str):
                if value.lower().startswith("bearer "):
                    masked[key] = "Bearer " + mask_api_key(value[7:])
                else:
                    masked[key] = mask_api_key(value)
            else:
                masked[key] = mask_sensitive_data(value)
        return masked
    if isinstance(data, list):
        return [mask_sensitive_data(item) for item in data]
    return data


def safe_log_data(data: Any, max_length: int = 2000) -> str:
    """生成可安全写入日志的预览字符串"""
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode("utf-8", errors="replace")

    if isinstance(data, str):
        try:
            parsed = json.loads(data)
        except (ValueError, TypeError):
            text = data
        else:
            text = json.dumps(mask_sensitive_data(parsed), ensure_ascii=False)
    else:
        try:
            text = json.dumps(mask_sensitive_data(data), ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            text = str(data)

    if len(text) > max_length:
        return text[:max_length] + f"...[truncated {len(text) - max_length} chars]"
    return text
