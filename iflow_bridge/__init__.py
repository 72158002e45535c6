"""iflow-bridge: OpenAI/Anthropic-compatible HTTP gateway to the iFlow CLI."""

from .config import load_config
from .core.session_manager import SessionManager
from .types import (
    BackendConnectionError,
    BridgeConfig,
    BridgeError,
    ChatMessage,
    ChatRequest,
    ChatResult,
    StreamChunk,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "SessionManager",
    "load_config",
    "BackendConnectionError",
    "BridgeConfig",
    "BridgeError",
    "ChatMessage",
    "ChatRequest",
    "ChatResult",
    "StreamChunk",
    "ValidationError",
]
