"""All dataclasses, enums and exceptions for iflow-bridge."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


# ---------------------------------------------------------------------------
# Chat messages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContentPart:
    """One typed part of a multi-part message: text or an image reference."""
    type: str  # "text" or "image"
    text: str = ""
    image_url: str = ""


@dataclass(frozen=True)
class ChatMessage:
    role: str  # "system", "user", "assistant"; anything else (e.g. "tool") is not prompted
    content: str | tuple[ContentPart, ...] = ""

    @property
    def text(self) -> str:
        """Plain text of the message; text parts joined in order, images skipped."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(p.text for p in self.content if p.type == "text" and p.text)


@dataclass
class ChatRequest:
    """A chat call as seen by the SessionManager, independent of wire format."""
    model: str
    messages: list[ChatMessage]
    stream: bool = False
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass
class ChatResult:
    text: str
    model: str
    stop_reason: str = "end_turn"


@dataclass(frozen=True)
class StreamChunk:
    """Incremental unit of a streamed response.

    Exactly one of the fields is set: a role announcement opens the stream,
    text deltas follow, and a chunk carrying ``stop_reason`` closes it.
    """
    role: str | None = None
    text: str | None = None
    stop_reason: str | None = None

    @property
    def is_final(self) -> bool:
        return self.stop_reason is not None


# ---------------------------------------------------------------------------
# Backend protocol
# ---------------------------------------------------------------------------

class EventKind(enum.Enum):
    TEXT = "text"        # incremental assistant text
    FINISH = "finish"    # the backend completed the task for this prompt
    ERROR = "error"      # the backend rejected the prompt


@dataclass(frozen=True)
class BackendEvent:
    kind: EventKind
    text: str = ""
    stop_reason: str = ""


@dataclass
class BackendOptions:
    """What a freshly started backend is configured with.

    The bridge only ever runs the backend as a pure conversation engine:
    every action-taking tool is disallowed and file access is off.
    """
    system_prompt: str
    disallowed_tools: list[str]
    cwd: str = "."
    permission_mode: str = "auto"
    file_access: bool = False


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ROTATING = "rotating"


@dataclass
class SessionStats:
    total_requests: int
    recent_requests: int
    session_count: int
    session_age_s: int


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_DISALLOWED_TOOLS = [
    "read_file", "write_file", "replace", "glob", "search_file_content",
    "list_directory", "run_shell_command", "web_fetch", "web_search",
    "task", "todo_write", "todo_read", "ask_user_question", "image_read",
]


@dataclass
class PacingConfig:
    min_interval_ms: int = 300
    max_interval_ms: int = 1500
    max_requests_per_minute: int = 25
    window_ms: int = 60_000
    rate_limit_jitter_ms: tuple[int, int] = (1000, 5000)
    max_requests_per_session: int = 50
    max_session_age_s: float = 30 * 60
    rotation_cooldown_ms: tuple[int, int] = (2000, 5000)


@dataclass
class BackendConfig:
    command: list[str] = field(default_factory=lambda: ["iflow", "--experimental-acp"])
    cwd: str = "."
    system_prompt: str = "You are a helpful AI assistant."
    disallowed_tools: list[str] = field(default_factory=lambda: list(DEFAULT_DISALLOWED_TOOLS))
    default_model: str = "glm-5"
    connect_timeout_s: float = 30.0
    response_timeout_s: float = 300.0
    drain_timeout_s: float = 30.0

    def options(self) -> BackendOptions:
        return BackendOptions(
            system_prompt=self.system_prompt,
            disallowed_tools=list(self.disallowed_tools),
            cwd=self.cwd,
        )


@dataclass
class ModelsConfig:
    aliases: dict[str, str] = field(default_factory=dict)  # merged over built-ins
    catalog: list[dict] = field(default_factory=list)      # empty = built-in list


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 28002
    log_max_entries: int = 100
    cors: bool = True
    connect_on_startup: bool = False


@dataclass
class BridgeConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    pacing: PacingConfig = field(default_factory=PacingConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    silent: bool = False
    sanitize_prompts: bool = False


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class BridgeError(Exception):
    """Base class for every error raised by iflow-bridge."""


class BackendConnectionError(BridgeError, ConnectionError):
    """The backend process could not be reached, configured, or went away."""


class SessionError(BridgeError):
    """A session operation was attempted without a live connection."""


class ValidationError(BridgeError, ValueError):
    """An inbound request is malformed (e.g. no messages)."""


class BackendProtocolError(BridgeError):
    """The backend answered, but reported a failure for this exchange."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class BackendTimeoutError(BackendProtocolError):
    """No backend event arrived within the response timeout."""
