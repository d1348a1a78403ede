"""
本地中继服务
直连无法完成的请求（本地文件引用、放宽证书校验、代理等）由该服务代为转发
"""
import base64
import re
import time
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx
import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from src.core.settings import get_settings
from src.core.transport import LOCAL_FILE_MARKER
from src.utils.logger import ERROR_TYPE_NETWORK, log_structured_error, setup_logger

logger = setup_logger("relay_server")

router = APIRouter()

# local-file://<path>，路径在 JSON 字符串内，遇到引号或空白结束
_LOCAL_FILE_PATTERN = re.compile(re.escape(LOCAL_FILE_MARKER) + r'([^"\s]+)')


class ProxySettings(BaseModel):
    url: Optional[str] = None


class RelayRequest(BaseModel):
    """中继请求，字段与传输层构造的中继描述一致"""

    model_config = ConfigDict(populate_by_name=True)

    target_url: str = Field(..., alias="targetUrl")
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    timeout: int = Field(120000, description="超时（毫秒）")
    tls_relax: bool = Field(False, alias="tlsRelax")
    http1_only: bool = Field(False, alias="http1Only")
    proxy_settings: Optional[ProxySettings] = Field(None, alias="proxySettings")
    is_streaming: bool = Field(False, alias="isStreaming")


class LocalFileError(Exception):
    """Raised when a local-file reference cannot be read."""


def resolve_local_files(body: str) -> str:
    """把请求体里的 local-file:// 引用替换为文件内容的 base64"""

    def _replace(match: "re.Match[str]") -> str:
        path = Path(match.group(1))
        try:
            data = path.read_bytes()
        except OSError as e:
            raise LocalFileError(f"Cannot read local file {path}: {e}") from e
        return base64.b64encode(data).decode("ascii")

    return _LOCAL_FILE_PATTERN.sub(_replace, body)


def _client_for(relay: RelayRequest) -> httpx.AsyncClient:
    # httpx 默认只用 HTTP/1.1，http1Only 无需额外设置
    proxy = relay.proxy_settings.url if relay.proxy_settings else None
    return httpx.AsyncClient(
        timeout=httpx.Timeout(relay.timeout / 1000.0),
        verify=not relay.tls_relax,
        proxy=proxy,
        follow_redirects=True,
    )


@router.post("/relay")
async def relay(relay_request: RelayRequest):
    """转发一次请求，上游响应按原样流式返回"""
    body = relay_request.body
    if body and LOCAL_FILE_MARKER in body:
        try:
            body = resolve_local_files(body)
        except LocalFileError as e:
            logger.error(str(e))
            raise HTTPException(status_code=400, detail=str(e))

    client = _client_for(relay_request)
    try:
        upstream_request = client.build_request(
            relay_request.method,
            relay_request.target_url,
            headers=relay_request.headers,
            content=body.encode("utf-8") if body is not None else None,
        )
        upstream = await client.send(upstream_request, stream=True)
    except httpx.InvalidURL as e:
        await client.aclose()
        logger.error(f"Relay rejected target URL {relay_request.target_url!r}: {e}")
        raise HTTPException(status_code=400, detail=f"Invalid target URL: {e}")
    except httpx.TimeoutException as e:
        await client.aclose()
        log_structured_error(
            logger,
            error_type=ERROR_TYPE_NETWORK,
            exc=e,
            request_method=relay_request.method,
            request_url=relay_request.target_url,
            extra={"relay": True},
        )
        raise HTTPException(status_code=504, detail=f"Upstream timed out: {relay_request.target_url}")
    except httpx.RequestError as e:
        await client.aclose()
        log_structured_error(
            logger,
            error_type=ERROR_TYPE_NETWORK,
            exc=e,
            request_method=relay_request.method,
            request_url=relay_request.target_url,
            extra={"relay": True},
        )
        raise HTTPException(status_code=502, detail=f"Upstream connection failed: {e.__class__.__name__}: {e}")

    logger.debug(f"Relay {relay_request.method} {relay_request.target_url} -> {upstream.status_code}")

    async def stream_upstream():
        try:
            async for chunk in upstream.aiter_bytes():
                yield chunk
        finally:
            await upstream.aclose()
            await client.aclose()

    headers = {"Cache-Control": "no-cache"}
    if relay_request.is_streaming:
        headers["X-Accel-Buffering"] = "no"
    return StreamingResponse(
        stream_upstream(),
        status_code=upstream.status_code,
        media_type=upstream.headers.get("content-type", "application/octet-stream"),
        headers=headers,
    )


@router.get("/health")
async def health_check():
    """健康检查"""
    return {
        "status": "healthy",
        "timestamp": time.time(),
    }


def create_app() -> FastAPI:
    app = FastAPI(title="LLM local relay")
    app.include_router(router)
    return app


def main() -> None:
    """按 LLM_RELAY_URL 的主机与端口启动中继服务"""
    parsed = urlparse(get_settings().relay_url)
    uvicorn.run(create_app(), host=parsed.hostname or "127.0.0.1", port=parsed.port or 8741)


if __name__ == "__main__":
    main()
