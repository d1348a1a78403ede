"""
HTTP 传输层
超时/取消竞速、本地中继回退、统一错误归类
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Optional, Union

import httpx

from src.core.cancellation import AbortReason, CancellationToken
from src.core.settings import LlmSettings, get_settings
from src.formats.unified.exceptions import (
    CancellationError,
    ConnectivityError,
    DecodeError,
    HttpStatusError,
    RequestTimeoutError,
)
from src.utils.logger import (
    ERROR_TYPE_NETWORK,
    error_type_for_status,
    log_structured_error,
    setup_logger,
)

logger = setup_logger("transport")

# 请求体中出现该标记时必须经由本地中继（直连无法读取本地文件）
LOCAL_FILE_MARKER = "local-file://"

NATIVE_STRATEGY = "native"


@dataclass
class RequestSpec:
    """Everything needed to issue one HTTP request."""

    method: str = "POST"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Union[str, bytes, Dict[str, Any], None] = None
    is_streaming: bool = False
    force_relay: bool = False
    tls_relax: bool = False
    http1_only: bool = False
    proxy: Optional[str] = None
    relay_strategy: Optional[str] = None

    def body_text(self) -> str:
        if self.body is None:
            return ""
        if isinstance(self.body, bytes):
            return self.body.decode("utf-8", errors="replace")
        if isinstance(self.body, str):
            return self.body
        return json.dumps(self.body, ensure_ascii=False)

    def body_bytes(self) -> Optional[bytes]:
        if self.body is None:
            return None
        if isinstance(self.body, bytes):
            return self.body
        return self.body_text().encode("utf-8")


def should_use_relay(spec: RequestSpec, strategy: str = NATIVE_STRATEGY) -> bool:
    """Whether a request must go through the local relay instead of the direct path."""
    if LOCAL_FILE_MARKER in spec.body_text():
        return True
    if spec.force_relay:
        return True
    if (spec.tls_relax or spec.http1_only) and strategy != NATIVE_STRATEGY:
        return True
    return False


class _AbortGuard:
    """Links the caller's token and a deadline timer to one internal token."""

    def __init__(self, timeout_ms: int, external: Optional[CancellationToken]):
        self.timeout_ms = timeout_ms
        self.token = CancellationToken()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(timeout_ms / 1000.0, self.token.cancel, AbortReason.TIMEOUT)
        self._unlink = (
            external.add_callback(lambda _reason: self.token.cancel(AbortReason.CANCELLED))
            if external is not None
            else None
        )

    def raise_for_abort(self) -> None:
        if self.token.reason == AbortReason.TIMEOUT:
            raise RequestTimeoutError(
                f"Request timed out after {self.timeout_ms}ms",
                timeout_ms=self.timeout_ms,
            )
        raise CancellationError()

    async def run(self, awaitable):
        """Await ``awaitable`` unless the token fires first."""
        if self.token.is_cancelled:
            self.raise_for_abort()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.token.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self.raise_for_abort()

    def dispose(self) -> None:
        self._timer.cancel()
        if self._unlink is not None:
            self._unlink()
            self._unlink = None


class ResponseHandle:
    """A response whose body reads stay under the request deadline and cancellation."""

    def __init__(
        self,
        response: httpx.Response,
        guard: _AbortGuard,
        client: httpx.AsyncClient,
        url: str,
        via_relay: bool = False,
    ):
        self._response = response
        self._guard = guard
        self._client = client
        self._closed = False
        self.url = url
        self.via_relay = via_relay

    @property
    def status(self) -> int:
        return self._response.status_code

    @property
    def status_text(self) -> str:
        return self._response.reason_phrase

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        """Yield body chunks; an abort closes the stream and raises."""
        iterator = self._response.aiter_bytes().__aiter__()
        try:
            while True:
                try:
                    chunk = await self._guard.run(iterator.__anext__())
                except StopAsyncIteration:
                    break
                except (httpx.TimeoutException, httpx.RequestError) as e:
                    raise _map_httpx_error(e, self.url, self._guard.timeout_ms) from e
                yield chunk
        finally:
            await self.aclose()

    async def read(self) -> bytes:
        try:
            return await self._guard.run(self._response.aread())
        except (httpx.TimeoutException, httpx.RequestError) as e:
            raise _map_httpx_error(e, self.url, self._guard.timeout_ms) from e
        finally:
            await self.aclose()

    async def text(self) -> str:
        raw = await self.read()
        return raw.decode(self._response.encoding or "utf-8", errors="replace")

    async def json(self) -> Any:
        text = await self.text()
        try:
            return json.loads(text)
        except ValueError as e:
            raise DecodeError(f"Response is not valid JSON: {e}", payload=text) from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._guard.dispose()
        await self._response.aclose()
        await self._client.aclose()


def _map_httpx_error(exc: Exception, url: str, timeout_ms: int) -> Exception:
    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutError(f"Request timed out: {url}", timeout_ms=timeout_ms)
    return ConnectivityError(f"Network error for {url}: {exc.__class__.__name__}: {exc}")


ClientFactory = Callable[[RequestSpec], httpx.AsyncClient]


class HttpTransport:
    """Issues provider HTTP calls.

    The deadline covers the whole operation, streaming body included.
    Only connect failures are retried, and only before any response exists.
    """

    def __init__(self, settings: Optional[LlmSettings] = None, client_factory: Optional[ClientFactory] = None):
        self._settings = settings or get_settings()
        self._client_factory = client_factory or self._default_client

    @staticmethod
    def _default_client(spec: RequestSpec) -> httpx.AsyncClient:
        # httpx 默认即为 HTTP/1.1，http1_only 在直连路径上无需额外处理
        return httpx.AsyncClient(
            timeout=None,
            verify=not spec.tls_relax,
            proxy=spec.proxy,
            follow_redirects=True,
        )

    def build_relay_spec(self, url: str, spec: RequestSpec, timeout_ms: int) -> RequestSpec:
        """Wrap a request as a call to the local relay process."""
        payload = {
            "targetUrl": url,
            "method": spec.method,
            "headers": spec.headers,
            "body": spec.body_text() if spec.body is not None else None,
            "timeout": timeout_ms,
            "tlsRelax": spec.tls_relax,
            "http1Only": spec.http1_only,
            "proxySettings": {"url": spec.proxy} if spec.proxy else None,
            "isStreaming": spec.is_streaming,
        }
        return RequestSpec(
            method="POST",
            headers={"Content-Type": "application/json"},
            body=json.dumps(payload, ensure_ascii=False),
            is_streaming=spec.is_streaming,
        )

    async def send(
        self,
        url: str,
        spec: RequestSpec,
        timeout_ms: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ResponseHandle:
        if cancel is not None and cancel.is_cancelled:
            raise CancellationError("Request cancelled before it was sent")

        timeout_ms = timeout_ms or self._settings.default_timeout_ms
        strategy = spec.relay_strategy or self._settings.relay_strategy
        via_relay = should_use_relay(spec, strategy)
        target_url = url
        if via_relay:
            logger.info(f"Routing request through local relay: {url}")
            spec = self.build_relay_spec(url, spec, timeout_ms)
            url = self._settings.relay_url

        guard = _AbortGuard(timeout_ms, cancel)
        client = self._client_factory(spec)
        attempt = 0
        while True:
            try:
                request = client.build_request(spec.method, url, headers=spec.headers, content=spec.body_bytes())
                response = await guard.run(client.send(request, stream=True))
                break
            except (RequestTimeoutError, CancellationError):
                guard.dispose()
                await client.aclose()
                raise
            except httpx.ConnectError as e:
                if attempt < self._settings.max_retries:
                    attempt += 1
                    logger.warning(f"Connect failed for {target_url}, retry {attempt}/{self._settings.max_retries}")
                    continue
                await self._fail(guard, client)
                mapped = _map_httpx_error(e, target_url, timeout_ms)
                log_structured_error(
                    logger,
                    error_type=ERROR_TYPE_NETWORK,
                    exc=e,
                    request_method=spec.method,
                    request_url=target_url,
                    extra={"via_relay": via_relay, "attempts": attempt + 1},
                )
                raise mapped from e
            except (httpx.TimeoutException, httpx.RequestError) as e:
                await self._fail(guard, client)
                mapped = _map_httpx_error(e, target_url, timeout_ms)
                log_structured_error(
                    logger,
                    error_type=ERROR_TYPE_NETWORK,
                    exc=e,
                    request_method=spec.method,
                    request_url=target_url,
                    extra={"via_relay": via_relay},
                )
                raise mapped from e

        handle = ResponseHandle(response, guard, client, target_url, via_relay=via_relay)
        if not 200 <= response.status_code < 300:
            try:
                body = await handle.text()
            except (ConnectivityError, RequestTimeoutError):
                body = ""
            error = HttpStatusError(response.status_code, response.reason_phrase, body)
            log_structured_error(
                logger,
                error_type=error_type_for_status(response.status_code),
                exc=error,
                request_method=spec.method,
                request_url=target_url,
                response_status=response.status_code,
                response_headers=response.headers,
                response_body=body,
                extra={"via_relay": via_relay},
            )
            raise error
        return handle

    @staticmethod
    async def _fail(guard: _AbortGuard, client: httpx.AsyncClient) -> None:
        guard.dispose()
        await client.aclose()
