"""
Unified LLM API Exceptions

Error taxonomy shared by transport, adapters and the client facade.
"""

import json
from typing import Any, List, Optional


class LlmApiError(Exception):
    """Base exception for every error raised by this layer."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        # Whatever a failed stream had accumulated before the error, if any
        self.partial_response = None


class ConnectivityError(LlmApiError):
    """Raised when the request fails at the network level before any response."""

    pass


class RequestTimeoutError(LlmApiError, TimeoutError):
    """Raised when the overall deadline of a request is exceeded."""

    def __init__(self, message: str = "Request timed out", timeout_ms: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout_ms = timeout_ms


class CancellationError(LlmApiError):
    """Raised when the caller aborts the request."""

    def __init__(self, message: str = "Request cancelled by caller", **kwargs):
        super().__init__(message, **kwargs)


class HttpStatusError(LlmApiError):
    """Raised for non-2xx responses."""

    def __init__(self, status: int, status_text: str = "", body: str = "", **kwargs):
        self.status = status
        self.status_text = status_text
        self.body = body or ""
        detail = self.upstream_message
        message = f"HTTP {status} {status_text}".strip()
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, **kwargs)

    @property
    def upstream_message(self) -> str:
        """Best-effort error message extracted from the upstream body."""
        if not self.body:
            return ""
        try:
            data = json.loads(self.body)
        except ValueError:
            return self.body[:300]

        message = None
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict):
                message = err.get("message") or err.get("type") or err.get("code")
            elif isinstance(err, str):
                message = err
            message = message or data.get("message") or data.get("detail")
        elif isinstance(data, list) and data and isinstance(data[0], dict):
            # Gemini 有时返回 [{"error": {...}}]
            err = data[0].get("error")
            if isinstance(err, dict):
                message = err.get("message")

        if not message:
            message = self.body
        return str(message)[:300]


class DecodeError(LlmApiError):
    """Raised when a response or stream payload does not match the provider shape."""

    def __init__(self, message: str, payload: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.payload = payload


class UnsupportedOperationError(LlmApiError):
    """Raised before any network call when a provider or model lacks the capability."""

    pass


class ToolCallMismatchError(LlmApiError):
    """Raised when a tool_result references an unknown tool_use id."""

    def __init__(self, unmatched_ids: List[str], **kwargs):
        super().__init__(f"Unmatched tool result IDs: {unmatched_ids}", **kwargs)
        self.unmatched_ids = unmatched_ids
