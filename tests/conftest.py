"""Shared fixtures for iflow-bridge tests."""

from __future__ import annotations

import asyncio
import random

import pytest

from iflow_bridge.backend.base import Backend
from iflow_bridge.core.session import SessionHandle
from iflow_bridge.core.session_manager import SessionManager
from iflow_bridge.types import (
    DEFAULT_DISALLOWED_TOOLS,
    BackendEvent,
    BackendOptions,
    ChatMessage,
    ChatRequest,
    EventKind,
    PacingConfig,
)

# Marker inside a scripted response: the backend drops the connection there.
DROP = None


def text(t: str) -> BackendEvent:
    return BackendEvent(EventKind.TEXT, text=t)


def finish(stop_reason: str = "end_turn") -> BackendEvent:
    return BackendEvent(EventKind.FINISH, stop_reason=stop_reason)


def error(message: str) -> BackendEvent:
    return BackendEvent(EventKind.ERROR, text=message)


def user_request(content: str = "hello", model: str = "", stream: bool = False) -> ChatRequest:
    return ChatRequest(model=model, messages=[ChatMessage("user", content)], stream=stream)


class FakeClock:
    """Millisecond clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds * 1000
        await asyncio.sleep(0)


class FakeBackend(Backend):
    """In-memory backend replaying scripted responses from its factory."""

    def __init__(self, factory: FakeBackendFactory) -> None:
        self.factory = factory
        self.options: BackendOptions | None = None
        self.models: list[str] = []
        self.prompts: list[str] = []
        self.started = False
        self.closed = False
        self.close_calls = 0
        self._events: asyncio.Queue = asyncio.Queue()

    @property
    def is_connected(self) -> bool:
        return self.started and not self.closed

    async def start(self, options: BackendOptions) -> None:
        self.factory.start_calls += 1
        self.options = options
        if self.factory.start_delay:
            await asyncio.sleep(self.factory.start_delay)
        if self.factory.start_error is not None:
            raise self.factory.start_error
        self.started = True

    async def set_model(self, model: str) -> None:
        self.models.append(model)
        if self.factory.set_model_delay:
            await asyncio.sleep(self.factory.set_model_delay)

    async def send_prompt(self, prompt: str) -> None:
        self.prompts.append(prompt)
        self.factory.sent_at.append(self.factory.clock())
        if self.factory.responses:
            script = self.factory.responses.pop(0)
        else:
            script = [text("ok"), finish()]
        for event in script:
            self._events.put_nowait(event)

    async def next_event(self) -> BackendEvent | None:
        if self.closed:
            return None
        event = await self._events.get()
        if event is DROP:
            self.closed = True
        return event

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True
        self._events.put_nowait(None)


class FakeBackendFactory:
    """Callable passed to ``SessionHandle``; records every backend it builds."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.created: list[FakeBackend] = []
        self.responses: list[list[BackendEvent | None]] = []
        self.sent_at: list[float] = []
        self.start_calls = 0
        self.start_delay = 0.0
        self.set_model_delay = 0.0
        self.start_error: Exception | None = None

    def __call__(self) -> FakeBackend:
        backend = FakeBackend(self)
        self.created.append(backend)
        return backend

    @property
    def last(self) -> FakeBackend:
        return self.created[-1]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def backend_factory(clock) -> FakeBackendFactory:
    return FakeBackendFactory(clock)


@pytest.fixture
def backend_options() -> BackendOptions:
    return BackendOptions(
        system_prompt="You are a helpful AI assistant.",
        disallowed_tools=list(DEFAULT_DISALLOWED_TOOLS),
    )


@pytest.fixture
def make_manager(backend_factory, backend_options, clock, rng):
    """Build a SessionManager wired to the fake backend and clock."""

    def _make(pacing: PacingConfig | None = None, *, response_timeout: float = 5.0, **kwargs):
        handle = SessionHandle(backend_factory, backend_options, response_timeout=response_timeout)
        return SessionManager(
            handle,
            pacing or PacingConfig(),
            rng=rng,
            clock=clock,
            sleep=clock.sleep,
            **kwargs,
        )

    return _make


@pytest.fixture
def manager(make_manager) -> SessionManager:
    return make_manager()
