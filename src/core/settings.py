"""
客户端运行配置
从环境变量加载，进程内单例缓存
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

SUPPORTED_RELAY_STRATEGIES = ("native", "relay")
SUPPORTED_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_TRUE_VALUES = ("1", "true", "yes", "on")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class LlmSettings:
    """LLM 客户端全局配置"""
    default_timeout_ms: int = 120000
    relay_url: str = "http://127.0.0.1:8741/relay"
    relay_strategy: str = "native"
    max_retries: int = 0
    estimate_missing_usage: bool = False
    log_level: str = "WARNING"
    log_file: str = "logs/llm_client.log"
    log_max_days: int = 1
    stream_trace_log: bool = False
    stream_chunk_log_every_n: int = 50

    def __post_init__(self):
        if self.default_timeout_ms <= 0:
            raise ValueError("default_timeout_ms must be positive")
        if not self.relay_url:
            raise ValueError("relay_url is required")
        if self.relay_strategy not in SUPPORTED_RELAY_STRATEGIES:
            raise ValueError(f"Unsupported relay strategy: {self.relay_strategy}")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.log_level = (self.log_level or "WARNING").upper()
        if self.log_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"Unsupported log level: {self.log_level}")
        if self.log_max_days < 0:
            raise ValueError("log_max_days must be >= 0")
        if self.stream_chunk_log_every_n <= 0:
            self.stream_chunk_log_every_n = 50

    def to_dict(self) -> Dict[str, Any]:
        return {
            "default_timeout_ms": self.default_timeout_ms,
            "relay_url": self.relay_url,
            "relay_strategy": self.relay_strategy,
            "max_retries": self.max_retries,
            "estimate_missing_usage": self.estimate_missing_usage,
            "log_level": self.log_level,
            "log_file": self.log_file,
            "log_max_days": self.log_max_days,
            "stream_trace_log": self.stream_trace_log,
            "stream_chunk_log_every_n": self.stream_chunk_log_every_n,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LlmSettings":
        if not data:
            raise ValueError("Empty settings data")
        return cls(
            default_timeout_ms=int(data.get("default_timeout_ms", 120000)),
            relay_url=data.get("relay_url") or "http://127.0.0.1:8741/relay",
            relay_strategy=data.get("relay_strategy") or "native",
            max_retries=int(data.get("max_retries", 0)),
            estimate_missing_usage=bool(data.get("estimate_missing_usage", False)),
            log_level=data.get("log_level") or "WARNING",
            log_file=data.get("log_file") or "logs/llm_client.log",
            log_max_days=int(data.get("log_max_days", 1)),
            stream_trace_log=bool(data.get("stream_trace_log", False)),
            stream_chunk_log_every_n=int(data.get("stream_chunk_log_every_n", 50)),
        )

    @classmethod
    def from_env(cls) -> "LlmSettings":
        """从环境变量构建配置"""
        return cls(
            default_timeout_ms=_env_int("LLM_TIMEOUT_MS", 120000),
            relay_url=os.environ.get("LLM_RELAY_URL", "http://127.0.0.1:8741/relay"),
            relay_strategy=os.environ.get("LLM_RELAY_STRATEGY", "native").strip().lower(),
            max_retries=_env_int("LLM_MAX_RETRIES", 0),
            estimate_missing_usage=_env_bool("LLM_ESTIMATE_USAGE"),
            log_level=os.environ.get("LLM_LOG_LEVEL", "WARNING"),
            log_file=os.environ.get("LLM_LOG_FILE", "logs/llm_client.log"),
            log_max_days=_env_int("LLM_LOG_MAX_DAYS", 1),
            stream_trace_log=_env_bool("STREAM_TRACE_LOG"),
            stream_chunk_log_every_n=_env_int("STREAM_CHUNK_LOG_EVERY_N", 50),
        )


_settings: Optional[LlmSettings] = None


def get_settings() -> LlmSettings:
    """获取全局配置（首次调用时从环境变量加载）"""
    global _settings
    if _settings is None:
        _settings = LlmSettings.from_env()
    return _settings


def reset_settings(settings: Optional[LlmSettings] = None) -> None:
    """替换或清空全局配置，主要供测试使用"""
    global _settings
    _settings = settings
