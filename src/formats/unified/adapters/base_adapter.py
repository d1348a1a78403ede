"""
Base Provider Adapter

Abstract base class for provider-specific adapters. An adapter owns exactly
one vendor wire schema: it builds the request body, sends it and parses the
final payload or the incremental stream events back into the unified shape.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from src.core.settings import LlmSettings, get_settings
from src.core.transport import HttpTransport, RequestSpec, ResponseHandle
from src.formats.normalizer import FilteredRequest
from src.formats.unified.exceptions import DecodeError, LlmApiError, UnsupportedOperationError
from src.formats.unified.sse import DONE_SENTINEL, iter_sse_events
from src.formats.unified.stream_state import StreamAccumulator
from src.formats.unified.types import FinishReason, Profile, UnifiedResponse
from src.utils.logger import ERROR_TYPE_CONVERSION, log_structured_error, setup_logger

logger = setup_logger("provider_adapter")

VERSION_MARKERS = ("/v1", "/v2", "/v3", "/api/v")


def build_versioned_url(
    base_url: str,
    endpoint: str,
    default_version: str = "v1",
    markers: Iterable[str] = VERSION_MARKERS,
) -> str:
    """Append ``{default_version}/`` unless the base URL already carries a version segment."""
    host = base_url if base_url.endswith("/") else f"{base_url}/"
    if not any(marker in host for marker in markers):
        host = f"{host}{default_version}/"
    return f"{host}{endpoint.lstrip('/')}"


class BaseProviderAdapter(ABC):
    """Abstract base class for provider adapters."""

    provider_type: str = ""
    done_sentinel: Optional[str] = DONE_SENTINEL
    finish_reason_map: Dict[str, FinishReason] = {}

    def __init__(self, transport: Optional[HttpTransport] = None, settings: Optional[LlmSettings] = None):
        self.settings = settings or get_settings()
        self.transport = transport or HttpTransport(self.settings)

    @abstractmethod
    def build_url(self, filtered: FilteredRequest) -> str:
        """Endpoint URL for this request (streaming or not)."""
        pass

    @abstractmethod
    def build_headers(self, profile: Profile) -> Dict[str, str]:
        """Auth and content headers."""
        pass

    @abstractmethod
    def build_body(self, filtered: FilteredRequest) -> Dict[str, Any]:
        """Serialize the filtered request into the provider wire body."""
        pass

    @abstractmethod
    def parse_final(self, raw: Dict[str, Any]) -> UnifiedResponse:
        """Parse a complete non-streaming payload."""
        pass

    @abstractmethod
    def parse_stream_event(self, payload: str, accumulator: StreamAccumulator) -> None:
        """Apply one stream event payload to the accumulator."""
        pass

    def map_finish_reason(self, reason: Optional[str]) -> Optional[FinishReason]:
        if not reason:
            return None
        return self.finish_reason_map.get(reason, FinishReason.STOP)

    async def embed(self, profile: Profile, model_id: str, inputs: List[str]) -> List[List[float]]:
        raise UnsupportedOperationError(
            f"Provider '{self.provider_type}' does not provide an embedding endpoint",
            provider=self.provider_type,
        )

    def merged_headers(self, profile: Profile, headers: Dict[str, str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", **headers}
        if profile.custom_headers:
            headers.update(profile.custom_headers)
        return headers

    def request_headers(self, filtered: FilteredRequest) -> Dict[str, str]:
        """Per-request headers; defaults to the profile headers."""
        return self.build_headers(filtered.profile)

    def endpoint_for(self, profile: Profile, key: str, default: str) -> str:
        """Custom endpoint override from the profile, if configured."""
        return (profile.custom_endpoints or {}).get(key) or default

    async def send(self, body: Dict[str, Any], filtered: FilteredRequest) -> ResponseHandle:
        request = filtered.request
        spec = RequestSpec(
            method="POST",
            headers=self.request_headers(filtered),
            body=json.dumps(body, ensure_ascii=False),
            is_streaming=request.stream,
            force_relay=request.force_relay,
            tls_relax=request.tls_relax,
            http1_only=request.http1_only,
            proxy=request.proxy,
            relay_strategy=filtered.profile.relay_strategy,
        )
        return await self.transport.send(
            self.build_url(filtered),
            spec,
            timeout_ms=request.timeout_ms,
            cancel=request.cancel_token,
        )

    async def execute(self, filtered: FilteredRequest) -> UnifiedResponse:
        """Build, send and parse one request."""
        body = self.build_body(filtered)
        handle = await self.send(body, filtered)
        if filtered.request.stream:
            return await self.consume_stream(handle, filtered)

        raw = await handle.json()
        try:
            return self.parse_final(raw)
        except DecodeError as e:
            log_structured_error(
                logger,
                error_type=ERROR_TYPE_CONVERSION,
                exc=e,
                request_url=handle.url,
                response_body=raw,
                extra={"provider": self.provider_type, "model": filtered.request.model_id},
            )
            raise

    async def consume_stream(self, handle: ResponseHandle, filtered: FilteredRequest) -> UnifiedResponse:
        request = filtered.request
        accumulator = StreamAccumulator(
            model=request.model_id,
            on_stream=request.on_stream,
            on_reasoning_stream=request.on_reasoning_stream,
        )
        try:
            async for payload in iter_sse_events(handle.aiter_bytes(), self.done_sentinel):
                accumulator.event_count += 1
                self._trace_event(accumulator, payload)
                self.parse_stream_event(payload, accumulator)
        except LlmApiError as e:
            # 中途失败时保留已累积的内容，供调用方查看
            e.partial_response = accumulator.snapshot()
            raise
        finally:
            await handle.aclose()

        if accumulator.event_count == 0:
            raise DecodeError("Stream ended without any events", payload="", provider=self.provider_type)
        return self.finish_stream(accumulator)

    def finish_stream(self, accumulator: StreamAccumulator) -> UnifiedResponse:
        """Hook for adapters that derive extra fields at stream end."""
        return accumulator.finalize()

    def load_event(self, payload: str) -> Optional[Dict[str, Any]]:
        """Parse one event payload; malformed events are skipped."""
        try:
            data = json.loads(payload)
        except ValueError:
            logger.debug(f"Skipping malformed {self.provider_type} stream event: {payload[:200]!r}")
            return None
        if not isinstance(data, dict):
            return None
        return data

    def _trace_event(self, accumulator: StreamAccumulator, payload: str) -> None:
        # 流式日志默认只采样前几条和每 N 条
        n = accumulator.event_count
        if self.settings.stream_trace_log or n <= 3 or n % self.settings.stream_chunk_log_every_n == 0:
            logger.debug(f"[{self.provider_type}] stream event #{n}: {payload[:300]}")
