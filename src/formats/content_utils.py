"""
内容块辅助函数
MIME 推断、Data URL 构建、JSON Schema 清理
"""

from typing import Any, Dict, Optional

_IMAGE_EXT_MAP = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "svg": "image/svg+xml",
}

_MEDIA_EXT_MAP = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "mp4": "video/mp4",
    "mpeg": "video/mpeg",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "webm": "video/webm",
    "pdf": "application/pdf",
}

# base64 编码后的文件头
_IMAGE_MAGIC = (
    ("iVBOR", "image/png"),
    ("/9j/", "image/jpeg"),
    ("R0lGO", "image/gif"),
    ("UklGR", "image/webp"),
)


def _normalize_ext(file_ext: Optional[str]) -> str:
    if not file_ext:
        return ""
    return file_ext.lower().rsplit(".", 1)[-1]


def infer_image_mime_type(base64_data: Optional[str] = None, file_ext: Optional[str] = None) -> str:
    """推断图片 MIME 类型，无法识别时返回 image/png"""
    ext = _normalize_ext(file_ext)
    if ext in _IMAGE_EXT_MAP:
        return _IMAGE_EXT_MAP[ext]

    if base64_data:
        header = base64_data[:20]
        for magic, mime in _IMAGE_MAGIC:
            if header.startswith(magic):
                return mime

    return "image/png"


def infer_media_mime_type(base64_data: Optional[str] = None, file_ext: Optional[str] = None) -> str:
    """推断音视频/文档 MIME 类型，图片规则优先"""
    ext = _normalize_ext(file_ext)
    if ext in _IMAGE_EXT_MAP:
        return _IMAGE_EXT_MAP[ext]
    if ext in _MEDIA_EXT_MAP:
        return _MEDIA_EXT_MAP[ext]
    return infer_image_mime_type(base64_data)


def build_data_url(base64_data: str, mime_type: Optional[str] = None) -> str:
    """构建 data:<mime>;base64,<data>"""
    final_mime = mime_type or infer_image_mime_type(base64_data)
    return f"data:{final_mime};base64,{base64_data}"


def audio_format_from_mime(mime_type: Optional[str]) -> str:
    """OpenAI input_audio 只接受 wav / mp3"""
    if mime_type and ("mpeg" in mime_type or "mp3" in mime_type):
        return "mp3"
    return "wav"


_GEMINI_SCHEMA_KEYS = {"type", "description", "properties", "required", "enum", "items", "nullable", "format"}


def sanitize_schema_for_gemini(schema: Any, uppercase_types: bool = False) -> Any:
    """递归移除 Gemini 不支持的 JSON Schema 关键字

    uppercase_types=True 时把 type 转为 Gemini Schema 的大写枚举（responseSchema 需要）。
    """
    if isinstance(schema, list):
        return [sanitize_schema_for_gemini(item, uppercase_types) for item in schema]
    if not isinstance(schema, dict):
        return schema

    sanitized: Dict[str, Any] = {k: v for k, v in schema.items() if k in _GEMINI_SCHEMA_KEYS}

    schema_type = sanitized.get("type")
    if isinstance(schema_type, list):
        # ["string", "null"] -> string + nullable
        non_null = [t for t in schema_type if t != "null"]
        if len(non_null) != len(schema_type):
            sanitized["nullable"] = True
        schema_type = non_null[0] if non_null else "string"
        sanitized["type"] = schema_type
    if uppercase_types and isinstance(schema_type, str):
        sanitized["type"] = schema_type.upper()

    if isinstance(sanitized.get("properties"), dict):
        sanitized["properties"] = {
            name: sanitize_schema_for_gemini(prop, uppercase_types)
            for name, prop in sanitized["properties"].items()
        }
    if "items" in sanitized:
        sanitized["items"] = sanitize_schema_for_gemini(sanitized["items"], uppercase_types)

    return sanitized
