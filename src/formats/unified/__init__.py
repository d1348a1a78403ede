"""
Unified LLM Types

Provider-agnostic request/response model, the streaming accumulator, the
event-stream reader and the error taxonomy shared by every adapter.

Key Types:
- UnifiedRequest / Message / ContentBlock: caller-facing request model
- UnifiedResponse / ToolCall / Usage / FinishReason: immutable response value
- StreamAccumulator: mutable state threaded through stream parsing
- SSEDecoder: incremental Server-Sent Events decoder

Usage:
    from src.formats.unified import (
        UnifiedRequest,
        Message,
        ContentBlock,
        UnifiedResponse,
        StreamAccumulator,
    )
"""

from .types import (
    Role,
    ContentBlockType,
    ContentBlock,
    Message,
    ToolDefinition,
    ToolChoice,
    UnifiedRequest,
    Profile,
    Usage,
    FinishReason,
    ToolCall,
    UnifiedResponse,
    ModelCapabilities,
    TokenLimits,
    ModelPricing,
    ModelDescriptor,
)
from .stream_state import (
    StreamPhase,
    ToolCallState,
    StreamAccumulator,
)
from .sse import (
    DONE_SENTINEL,
    SSEDecoder,
    iter_sse_events,
)
from .exceptions import (
    LlmApiError,
    ConnectivityError,
    RequestTimeoutError,
    CancellationError,
    HttpStatusError,
    DecodeError,
    UnsupportedOperationError,
    ToolCallMismatchError,
)

__all__ = [
    # Types
    "Role",
    "ContentBlockType",
    "ContentBlock",
    "Message",
    "ToolDefinition",
    "ToolChoice",
    "UnifiedRequest",
    "Profile",
    "Usage",
    "FinishReason",
    "ToolCall",
    "UnifiedResponse",
    "ModelCapabilities",
    "TokenLimits",
    "ModelPricing",
    "ModelDescriptor",
    # Stream State
    "StreamPhase",
    "ToolCallState",
    "StreamAccumulator",
    # Event stream
    "DONE_SENTINEL",
    "SSEDecoder",
    "iter_sse_events",
    # Exceptions
    "LlmApiError",
    "ConnectivityError",
    "RequestTimeoutError",
    "CancellationError",
    "HttpStatusError",
    "DecodeError",
    "UnsupportedOperationError",
    "ToolCallMismatchError",
]
