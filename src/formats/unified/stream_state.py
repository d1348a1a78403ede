"""
Stream State Management

Mutable accumulator threaded through a provider's stream-parsing loop and
finalized into an immutable UnifiedResponse once the stream ends.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from enum import Enum

from .types import FinishReason, StreamCallback, ToolCall, UnifiedResponse, Usage


class StreamPhase(str, Enum):
    """Current phase of a streaming response."""

    NOT_STARTED = "not_started"
    CONTENT_STREAMING = "content_streaming"
    TOOL_STREAMING = "tool_streaming"
    FINISHED = "finished"


ToolKey = Union[int, str]


@dataclass
class ToolCallState:
    """State for a single tool call being streamed."""

    key: ToolKey
    tool_call_id: str
    name: str
    order: int
    fragments: List[str] = field(default_factory=list)
    is_complete: bool = False

    @property
    def arguments_buffer(self) -> str:
        return "".join(self.fragments)


@dataclass
class StreamAccumulator:
    """Accumulates one response while events arrive.

    Tool calls are keyed by whatever identifies them on the wire (index or id).
    Argument fragments are kept in arrival order and joined without any
    rewriting on finalize.
    """

    model: str = ""
    on_stream: Optional[StreamCallback] = None
    on_reasoning_stream: Optional[StreamCallback] = None

    phase: StreamPhase = StreamPhase.NOT_STARTED

    content_parts: List[str] = field(default_factory=list)
    reasoning_parts: List[str] = field(default_factory=list)

    tool_calls: Dict[ToolKey, ToolCallState] = field(default_factory=dict)
    finished_tool_calls: List[ToolCall] = field(default_factory=list)
    # Anthropic 等按 content block index 定位当前工具
    current_tool_key: Optional[ToolKey] = None

    usage: Optional[Usage] = None
    finish_reason: Optional[FinishReason] = None
    stop_sequence: Optional[str] = None
    annotations: List[Dict[str, Any]] = field(default_factory=list)
    refusal_parts: List[str] = field(default_factory=list)
    system_fingerprint: Optional[str] = None
    service_tier: Optional[str] = None

    event_count: int = 0
    _tool_order: int = 0

    def append_text(self, text: str) -> None:
        """Append an answer-text delta and notify the stream callback."""
        if not text:
            return
        self.phase = StreamPhase.CONTENT_STREAMING
        self.content_parts.append(text)
        if self.on_stream is not None:
            self.on_stream(text)

    def append_reasoning(self, text: str) -> None:
        """Append a reasoning delta and notify the reasoning callback."""
        if not text:
            return
        self.reasoning_parts.append(text)
        if self.on_reasoning_stream is not None:
            self.on_reasoning_stream(text)

    def append_refusal(self, text: str) -> None:
        if text:
            self.refusal_parts.append(text)

    def start_tool_call(self, key: ToolKey, tool_call_id: str = "", name: str = "") -> ToolCallState:
        """Register a tool call, or fill in id/name on one already started."""
        state = self.tool_calls.get(key)
        if state is None:
            state = ToolCallState(key=key, tool_call_id=tool_call_id, name=name, order=self._tool_order)
            self._tool_order += 1
            self.tool_calls[key] = state
        else:
            if tool_call_id and not state.tool_call_id:
                state.tool_call_id = tool_call_id
            if name and not state.name:
                state.name = name
        self.current_tool_key = key
        self.phase = StreamPhase.TOOL_STREAMING
        return state

    def append_tool_arguments(self, key: ToolKey, fragment: str) -> None:
        """Append an argument fragment to a tool call, starting it if unseen."""
        if fragment is None:
            return
        state = self.tool_calls.get(key)
        if state is None:
            state = self.start_tool_call(key)
        state.fragments.append(fragment)

    def complete_tool_call(self, key: ToolKey) -> Optional[ToolCall]:
        """Finalize one buffered tool call."""
        state = self.tool_calls.pop(key, None)
        if state is None:
            return None
        state.is_complete = True
        call = ToolCall(id=state.tool_call_id, name=state.name, arguments_text=state.arguments_buffer)
        self.finished_tool_calls.append(call)
        if self.current_tool_key == key:
            self.current_tool_key = None
        return call

    def add_tool_call(self, tool_call_id: str, name: str, arguments_text: str) -> ToolCall:
        """Record a tool call delivered whole (no fragmentation)."""
        call = ToolCall(id=tool_call_id, name=name, arguments_text=arguments_text)
        self.finished_tool_calls.append(call)
        return call

    def get_tool_call(self, key: ToolKey) -> Optional[ToolCallState]:
        return self.tool_calls.get(key)

    def set_usage(self, usage: Optional[Usage]) -> None:
        """Later usage payloads overwrite earlier partial ones."""
        if usage is not None:
            self.usage = usage

    def set_finish_reason(self, reason: Optional[FinishReason]) -> None:
        if reason is not None:
            self.finish_reason = reason

    def add_annotations(self, annotations: Optional[List[Dict[str, Any]]]) -> None:
        if annotations:
            self.annotations.extend(annotations)

    @property
    def content(self) -> str:
        return "".join(self.content_parts)

    @property
    def reasoning_content(self) -> str:
        return "".join(self.reasoning_parts)

    def has_output(self) -> bool:
        return bool(self.content_parts or self.reasoning_parts or self.tool_calls or self.finished_tool_calls)

    def finalize(self) -> UnifiedResponse:
        """Close any still-open tool calls and freeze the result."""
        for state in sorted(self.tool_calls.values(), key=lambda s: s.order):
            self.complete_tool_call(state.key)
        self.phase = StreamPhase.FINISHED

        return UnifiedResponse(
            content=self.content,
            reasoning_content=self.reasoning_content or None,
            usage=self.usage,
            finish_reason=self.finish_reason,
            tool_calls=list(self.finished_tool_calls),
            annotations=list(self.annotations),
            is_stream=True,
            model=self.model or None,
            refusal="".join(self.refusal_parts) or None,
            stop_sequence=self.stop_sequence,
            system_fingerprint=self.system_fingerprint,
            service_tier=self.service_tier,
        )

    def snapshot(self) -> UnifiedResponse:
        """Partial response without mutating the accumulator."""
        pending = [
            ToolCall(id=s.tool_call_id, name=s.name, arguments_text=s.arguments_buffer)
            for s in sorted(self.tool_calls.values(), key=lambda s: s.order)
        ]
        return UnifiedResponse(
            content=self.content,
            reasoning_content=self.reasoning_content or None,
            usage=self.usage,
            finish_reason=self.finish_reason,
            tool_calls=list(self.finished_tool_calls) + pending,
            annotations=list(self.annotations),
            is_stream=True,
            model=self.model or None,
        )
