"""
日志配置
统一日志管理，控制台 + 按天轮转文件，附带结构化错误日志
"""
import logging
import logging.handlers
import sys
import os
import json
import time
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from src.core.settings import get_settings
from src.utils.security import mask_sensitive_data, safe_log_data

# 已创建的日志器
_loggers: Dict[str, logging.Logger] = {}

# 调试模式开关
_debug_mode = False


def is_debug_enabled() -> bool:
    """检查是否启用调试模式"""
    return _debug_mode


def enable_debug(enabled: bool = True):
    """
    启用或禁用调试模式。
    调试模式下文件日志降到 DEBUG，控制台默认保持 INFO。
    """
    global _debug_mode
    _debug_mode = enabled
    for logger in _loggers.values():
        _apply_levels(logger)


def _resolve_levels() -> Dict[str, int]:
    base_level = get_settings().log_level
    console_level = os.environ.get("CONSOLE_LOG_LEVEL", base_level).upper()
    file_level = os.environ.get("FILE_LOG_LEVEL", base_level).upper()
    if _debug_mode:
        file_level = "DEBUG"
        if "CONSOLE_LOG_LEVEL" not in os.environ:
            console_level = "INFO"

    def _lvl(s: str) -> int:
        return int(getattr(logging, s, logging.INFO))

    return {"console": _lvl(console_level), "file": _lvl(file_level)}


def _apply_levels(logger: logging.Logger) -> None:
    levels = _resolve_levels()
    # logger 本身的级别必须不高于任一 handler
    logger.setLevel(min(levels.values()))
    for handler in logger.handlers:
        role = getattr(handler, "_handler_role", None)
        if role in levels:
            handler.setLevel(levels[role])


def setup_logger(name: str, level: str = None) -> logging.Logger:
    """设置日志器"""
    if name in _loggers:
        return _loggers[name]

    settings = get_settings()
    logger = logging.getLogger(name)
    logger.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler._handler_role = "console"  # type: ignore[attr-defined]
    logger.addHandler(console_handler)

    try:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.TimedRotatingFileHandler(
            filename=str(log_path),
            when='midnight',
            interval=1,
            backupCount=settings.log_max_days,
            encoding='utf-8',
            delay=True,
        )
        file_handler.suffix = "%Y-%m-%d"
        file_handler.setFormatter(formatter)
        file_handler._handler_role = "file"  # type: ignore[attr-defined]
        logger.addHandler(file_handler)
    except OSError as e:
        # 文件日志不可用时只提示一次，不影响调用方
        console_handler.emit(logging.LogRecord(
            name=name,
            level=logging.WARNING,
            pathname="",
            lineno=0,
            msg=f"Failed to initialize file log handler: {e}",
            args=(),
            exc_info=None
        ))

    _apply_levels(logger)
    if level:
        logger.setLevel(int(getattr(logging, level.upper(), logging.INFO)))

    logger.propagate = False
    _loggers[name] = logger
    return logger


def get_logger(name: str) -> logging.Logger:
    """获取日志器"""
    return _loggers.get(name) or setup_logger(name)


def cleanup_old_logs():
    """清理超过保留天数的日志文件"""
    settings = get_settings()
    log_path = Path(settings.log_file)
    log_dir = log_path.parent
    if not log_dir.exists():
        return

    max_age = max(settings.log_max_days, 1) * 24 * 60 * 60
    now = time.time()
    for file_path in log_dir.glob(f"{log_path.stem}.*"):
        try:
            if file_path.stat().st_mtime < now - max_age:
                file_path.unlink()
        except OSError as e:
            print(f"Failed to clean up log file {file_path}: {e}")


# ===================== 结构化错误日志 =====================

ERROR_TYPE_NETWORK = "network"           # 网络错误：超时、连接失败、中继失败
ERROR_TYPE_AUTH = "auth"                 # 认证错误：401/403
ERROR_TYPE_RATE_LIMIT = "rate_limit"     # 限流错误：429
ERROR_TYPE_CONVERSION = "conversion"     # 请求体构建/响应解析错误
ERROR_TYPE_UPSTREAM_API = "upstream_api" # 上游API错误：非2xx响应、流式错误事件


def error_type_for_status(status: int) -> str:
    """根据 HTTP 状态码归类错误类型"""
    if status in (401, 403):
        return ERROR_TYPE_AUTH
    if status == 429:
        return ERROR_TYPE_RATE_LIMIT
    return ERROR_TYPE_UPSTREAM_API


def _extract_request_id(
    headers: Optional[Mapping[str, Any]] = None,
    explicit_request_id: Optional[str] = None,
) -> str:
    """从请求头或显式参数中提取/生成 request_id"""
    if explicit_request_id:
        return str(explicit_request_id)

    if headers:
        lower_map = {str(k).lower(): v for k, v in headers.items()}
        for key in ("x-request-id", "request-id", "x-correlation-id", "x-trace-id"):
            if lower_map.get(key):
                return str(lower_map[key])

    return uuid.uuid4().hex[:16]


def _summarize_headers(
    headers: Optional[Mapping[str, Any]],
    max_headers: int = 20,
    max_value_length: int = 200,
) -> Optional[Dict[str, Any]]:
    """对请求/响应头做掩码和长度控制"""
    if not headers:
        return None

    masked = mask_sensitive_data(dict(headers))
    summary: Dict[str, Any] = {}
    items = list(masked.items())
    for idx, (key, value) in enumerate(items):
        if idx >= max_headers:
            summary["_truncated"] = f"{len(items) - max_headers} more headers"
            break
        if isinstance(value, str) and len(value) > max_value_length:
            summary[key] = value[:max_value_length] + "...[truncated]"
        else:
            summary[key] = value
    return summary


def _preview_body(body: Any, max_length: int = 2000) -> Optional[str]:
    if body is None:
        return None
    return safe_log_data(body, max_length=max_length)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def log_structured_error(
    logger: logging.Logger,
    *,
    error_type: str,
    exc: Optional[BaseException] = None,
    request_id: Optional[str] = None,
    request_method: Optional[str] = None,
    request_url: Optional[str] = None,
    request_headers: Optional[Mapping[str, Any]] = None,
    request_body: Any = None,
    response_status: Optional[int] = None,
    response_headers: Optional[Mapping[str, Any]] = None,
    response_body: Any = None,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    """
    统一的结构化错误日志入口。

    Args:
        logger: 日志器实例
        error_type: 错误类型（network/auth/rate_limit/conversion/upstream_api）
        exc: 异常对象
        request_id: 请求ID（缺省时从 headers 提取或生成）
        request_method / request_url / request_headers / request_body: 请求信息
        response_status / response_headers / response_body: 响应信息
        extra: 额外上下文信息

    Returns:
        生成或提取的 request_id
    """
    effective_request_id = _extract_request_id(request_headers, request_id)

    exception_block: Dict[str, Any] = {}
    if exc is not None:
        exception_block["type"] = exc.__class__.__name__
        exception_block["message"] = str(exc)
        exception_block["traceback"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )

    payload: Dict[str, Any] = {
        "timestamp": _utc_timestamp(),
        "logger": logger.name,
        "level": "ERROR",
        "error_type": error_type,
        "request_id": effective_request_id,
        "request": {
            "method": request_method,
            "url": request_url,
            "headers": _summarize_headers(request_headers),
            "body": _preview_body(request_body),
        },
        "response": {
            "status": response_status,
            "headers": _summarize_headers(response_headers),
            "body": _preview_body(response_body),
        },
        "exception": exception_block,
    }
    if extra:
        payload["extra"] = extra

    try:
        serialized = json.dumps(payload, ensure_ascii=False, default=str)
    except (TypeError, ValueError) as serialize_exc:
        serialized = json.dumps({
            "timestamp": payload["timestamp"],
            "logger": logger.name,
            "error_type": error_type,
            "request_id": effective_request_id,
            "serialization_error": str(serialize_exc),
        }, ensure_ascii=False)

    logger.error(f"[structured_error] {serialized}")
    return effective_request_id


def log_request_entry(
    logger: logging.Logger,
    *,
    request_id: Optional[str] = None,
    provider_type: Optional[str] = None,
    profile_name: Optional[str] = None,
    model: Optional[str] = None,
    family: Optional[str] = None,
    is_streaming: bool = False,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    """
    记录请求入口日志（INFO级别）。

    Returns:
        生成或提取的 request_id
    """
    effective_request_id = _extract_request_id(None, request_id)
    payload: Dict[str, Any] = {
        "timestamp": _utc_timestamp(),
        "logger": logger.name,
        "level": "INFO",
        "type": "request_entry",
        "request_id": effective_request_id,
        "model": model,
        "family": family,
        "is_streaming": is_streaming,
        "profile": {
            "name": profile_name,
            "provider": provider_type,
        },
    }
    if extra:
        payload["extra"] = extra

    logger.info(f"[request_entry] {json.dumps(payload, ensure_ascii=False, default=str)}")
    return effective_request_id


cleanup_old_logs()
