"""Test helpers: SSE encoding, a recording mock handler and profile factory."""

import json
from typing import Any, Callable, Dict, List, Optional

import httpx

from src.core.settings import LlmSettings
from src.core.transport import HttpTransport
from src.formats.unified.types import Profile


def sse_bytes(*events: Any, done: bool = False) -> bytes:
    """Encode payloads as one SSE body; dicts are JSON-encoded."""
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


class RecordingHandler:
    """MockTransport handler that records requests and replays queued responses."""

    def __init__(self, responses: Optional[List[httpx.Response]] = None):
        self.responses = list(responses or [])
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(500, text="no response queued")
        return self.responses.pop(0)

    def queue(self, *responses: httpx.Response) -> "RecordingHandler":
        self.responses.extend(responses)
        return self

    @property
    def last_request(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> Dict[str, Any]:
        return json.loads(self.requests[-1].content.decode("utf-8"))


def make_transport(handler: Callable[[httpx.Request], Any], settings: Optional[LlmSettings] = None) -> HttpTransport:
    """HttpTransport whose clients route every request to ``handler``."""
    return HttpTransport(
        settings or LlmSettings(),
        client_factory=lambda spec: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def make_profile(provider_type: str, base_url: str = "https://api.example.com", **kwargs: Any) -> Profile:
    api_keys = kwargs.pop("api_keys", ["sk-test"])
    return Profile(type=provider_type, base_url=base_url, api_keys=api_keys, **kwargs)
