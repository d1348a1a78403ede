"""
Token 估算
基于 tiktoken 的本地估算，用于 count_tokens 以及上游未返回 usage 时的补全
"""

from functools import lru_cache
from typing import Any, Optional

import tiktoken

from src.formats.unified.types import ContentBlockType, UnifiedRequest, Usage
from src.utils.logger import setup_logger

logger = setup_logger("token_counter")

DEFAULT_ENCODING = "cl100k_base"

# 图片/音视频/文档按固定值估算
MEDIA_BLOCK_TOKENS = {
    ContentBlockType.IMAGE: 765,
    ContentBlockType.AUDIO: 1000,
    ContentBlockType.VIDEO: 2000,
    ContentBlockType.DOCUMENT: 1500,
}

# 每条消息的格式开销
MESSAGE_OVERHEAD_TOKENS = 4


@lru_cache(maxsize=16)
def _get_encoding(model_id: str) -> Any:
    """gpt-4 / gpt-3.5 使用模型自身的编码，其余统一 cl100k_base"""
    try:
        if "gpt-4" in model_id or "gpt-3.5" in model_id:
            return tiktoken.encoding_for_model(model_id)
        return tiktoken.get_encoding(DEFAULT_ENCODING)
    except KeyError:
        return tiktoken.get_encoding(DEFAULT_ENCODING)


def _estimate_by_chars(text: str) -> int:
    # 英文约 4 字符 / token
    return max(1, len(text) // 4) if text else 0


def estimate_tokens(text: Optional[str], model_id: str = "") -> int:
    """估算一段文本的 token 数"""
    if not text:
        return 0
    try:
        encoding = _get_encoding(model_id)
    except Exception as e:
        # 编码文件下载失败等情况
        logger.warning(f"tiktoken encoding unavailable ({e}), falling back to character-based estimation")
        return _estimate_by_chars(text)
    return len(encoding.encode(text, disallowed_special=()))


def _collect_text(request: UnifiedRequest) -> str:
    parts = []
    for message in request.messages:
        if isinstance(message.content, str):
            parts.append(message.content)
            continue
        for block in message.content:
            if block.type == ContentBlockType.TEXT:
                parts.append(block.text or "")
            elif block.type == ContentBlockType.TOOL_USE:
                parts.append(block.tool_name or "")
                parts.append(str(block.tool_input or {}))
            elif block.type == ContentBlockType.TOOL_RESULT:
                parts.append(block.result_text())
    for tool in request.tools or []:
        parts.append(tool.name)
        parts.append(tool.description or "")
        parts.append(str(tool.schema()))
    return "\n".join(p for p in parts if p)


def estimate_request_tokens(request: UnifiedRequest) -> int:
    """估算请求的输入 token：文本 + 每个媒体块的固定值 + 消息开销"""
    total = estimate_tokens(_collect_text(request), request.model_id)
    total += MESSAGE_OVERHEAD_TOKENS * len(request.messages)
    for _message, block in request.iter_blocks():
        total += MEDIA_BLOCK_TOKENS.get(block.type, 0)
    return total


def estimate_usage(request: UnifiedRequest, content: str, reasoning: Optional[str] = None) -> Usage:
    """上游没有返回 usage 时的本地估算"""
    prompt = estimate_request_tokens(request)
    completion = estimate_tokens(content, request.model_id) + estimate_tokens(reasoning, request.model_id)
    logger.debug(f"Estimated usage for {request.model_id}: prompt={prompt}, completion={completion}")
    return Usage.of(prompt, completion, estimated=True)
