"""SessionManager: the one entry point every chat call goes through.

State machine over a single session slot::

    DISCONNECTED -> CONNECTING -> CONNECTED -> ROTATING -> DISCONNECTED -> ...

Each call runs, in order: pacing gate, dispatch bookkeeping, rotation
check, connect, model selection, send, drain.  A per-call lock covers the
whole sequence so two exchanges never interleave on the connection.

A call that stops consuming its stream early leaves the connection
*dirty*; the next call drains the abandoned exchange (bounded by
``drain_timeout``) before sending, or reconnects if that fails.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Awaitable, Callable

from ..backend.acp import AcpBackend
from ..backend.base import Backend
from ..types import (
    BackendConnectionError,
    BackendProtocolError,
    BackendTimeoutError,
    BridgeConfig,
    ChatRequest,
    ChatResult,
    ConnectionState,
    EventKind,
    PacingConfig,
    SessionError,
    SessionStats,
    StreamChunk,
)
from .models import DEFAULT_MODEL, ModelRegistry
from .pacing import PacingPolicy, RequestLedger
from .prompt import build_prompt
from .sanitizer import detect_sensitive_info, redact_for_log, sanitize_messages
from .session import Session, SessionHandle

logger = logging.getLogger(__name__)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class SessionManager:
    """Shares one backend session between all callers.

    Construct one per process at startup and ``await disconnect()`` at
    shutdown; pass it explicitly to whatever serves requests.
    """

    def __init__(
        self,
        handle: SessionHandle,
        pacing: PacingConfig | None = None,
        *,
        models: ModelRegistry | None = None,
        default_model: str = DEFAULT_MODEL,
        drain_timeout: float = 30.0,
        sanitize_prompts: bool = False,
        silent: bool = False,
        rng: random.Random | None = None,
        clock: Callable[[], float] = _monotonic_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._handle = handle
        self.pacing_config = pacing or PacingConfig()
        self.policy = PacingPolicy(self.pacing_config, rng)
        self.models = models or ModelRegistry()
        self._model = self.models.resolve(default_model)
        self.drain_timeout = drain_timeout
        self.sanitize_prompts = sanitize_prompts
        self._clock = clock
        self._sleep = sleep
        self._info_level = logging.DEBUG if silent else logging.INFO

        # Pacing state
        self._ledger = RequestLedger(self.pacing_config.window_ms)
        self._total_requests = 0
        self._last_dispatch: float | None = None

        # Session slot
        self._session: Session | None = None
        self._state = ConnectionState.DISCONNECTED
        self._connecting: asyncio.Task | None = None
        self._torn_down = asyncio.Event()
        self._torn_down.set()
        self._dirty = False
        self._call_lock = asyncio.Lock()
        self._connect_attempts = 0

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        backend_factory: Callable[[], Backend] | None = None,
    ) -> SessionManager:
        """Wire a manager to ``AcpBackend`` (or *backend_factory*) per *config*."""
        backend_cfg = config.backend
        if backend_factory is None:
            def backend_factory() -> Backend:
                return AcpBackend(
                    backend_cfg.command, connect_timeout=backend_cfg.connect_timeout_s,
                )
        handle = SessionHandle(
            backend_factory,
            backend_cfg.options(),
            response_timeout=backend_cfg.response_timeout_s,
        )
        return cls(
            handle,
            config.pacing,
            models=ModelRegistry(config.models.aliases, config.models.catalog),
            default_model=backend_cfg.default_model,
            drain_timeout=backend_cfg.drain_timeout_s,
            sanitize_prompts=config.sanitize_prompts,
            silent=config.silent,
        )

    # -- accessors -----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def current_model(self) -> str:
        return self._model

    @property
    def is_connected(self) -> bool:
        return self._handle.is_connected(self._session)

    @property
    def connect_attempts(self) -> int:
        """Number of times a new backend connection was attempted."""
        return self._connect_attempts

    def set_silent(self, silent: bool) -> None:
        """Demote the informational log lines to DEBUG when *silent*."""
        self._info_level = logging.DEBUG if silent else logging.INFO

    def set_model(self, model: str) -> None:
        """Set the model used when a call does not name one."""
        self._model = self.models.resolve(model)

    def get_stats(self) -> SessionStats:
        """Read-only view of the pacing state."""
        now = self._clock()
        session = self._session
        age = 0
        if session is not None and self._handle.is_connected(session):
            age = int((now - session.created_at) // 1000)
        return SessionStats(
            total_requests=self._total_requests,
            recent_requests=self._ledger.count(now),
            session_count=self._handle.sessions_opened,
            session_age_s=age,
        )

    def _log(self, msg: str, *args: object) -> None:
        logger.log(self._info_level, msg, *args)

    def _transition_to(self, new_state: ConnectionState) -> None:
        old, self._state = self._state, new_state
        if old is not new_state:
            logger.debug("Session state: %s -> %s", old.value, new_state.value)

    # -- connection ----------------------------------------------------------

    async def ensure_connected(self) -> Session:
        """Return the live session, connecting if needed.

        Concurrent callers share a single in-flight attempt; its failure is
        raised to all of them.
        """
        if self._session is not None and self._handle.is_connected(self._session):
            return self._session
        task = self._connecting
        if task is None:
            task = asyncio.get_running_loop().create_task(self._connect())
            task.add_done_callback(self._clear_connecting)
            self._connecting = task
        # Shielded: one waiter being cancelled must not abort the shared attempt.
        return await asyncio.shield(task)

    def _clear_connecting(self, task: asyncio.Task) -> None:
        if self._connecting is task:
            self._connecting = None
        if not task.cancelled():
            # Retrieved here so an attempt nobody awaits anymore is not reported.
            task.exception()

    async def _connect(self) -> Session:
        await self._torn_down.wait()
        if self._session is not None:
            # Stale slot: the backend died under us.
            await self._teardown()
        self._transition_to(ConnectionState.CONNECTING)
        self._connect_attempts += 1
        self._log("Connecting to backend (model=%s)...", self._model)
        try:
            session = await self._handle.connect(self._model, created_at=self._clock())
        except BaseException:
            self._transition_to(ConnectionState.DISCONNECTED)
            raise
        self._session = session
        self._dirty = False
        self._transition_to(ConnectionState.CONNECTED)
        self._log("Connected to backend (session #%d)", session.number)
        return session

    async def _teardown(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        self._torn_down.clear()
        try:
            await self._handle.disconnect(session)
        finally:
            self._dirty = False
            self._transition_to(ConnectionState.DISCONNECTED)
            self._torn_down.set()

    async def disconnect(self) -> None:
        """Close the live session, waiting for any in-flight connect first."""
        task = self._connecting
        if task is not None:
            # Outcome ignored: a failed attempt leaves nothing to close.
            await asyncio.wait([task])
        await self._teardown()

    # -- pacing --------------------------------------------------------------

    async def _gate(self) -> None:
        """Wait out the pacing delay, record the dispatch, rotate if due."""
        now = self._clock()
        self._ledger.prune(now)
        wait = self.policy.next_delay(now, self._ledger, self._last_dispatch)
        if self._ledger.count(now) >= self.pacing_config.max_requests_per_minute:
            self._log("Rate limit reached: waiting %ds", math.ceil(wait / 1000))
        if wait > 0:
            await self._sleep(wait / 1000)

        dispatched = self._clock()
        self._last_dispatch = dispatched
        self._ledger.record(dispatched)
        self._total_requests += 1

        session = self._session
        if self.policy.needs_rotation(dispatched, session) and self.is_connected:
            self._log(
                "Rotating session #%d after %d requests",
                session.number, session.request_count,
            )
            self._transition_to(ConnectionState.ROTATING)
            await self._teardown()
            await self._sleep(self.policy.rotation_cooldown() / 1000)

    # -- exchange ------------------------------------------------------------

    async def _recover_abandoned(self) -> None:
        """Drain what an abandoned exchange left on the connection."""
        session = self._session
        try:
            await asyncio.wait_for(self._drain(session), self.drain_timeout)
        except (
            asyncio.TimeoutError, BackendTimeoutError, BackendConnectionError, SessionError,
        ) as e:
            logger.warning("Could not drain abandoned exchange (%s); reconnecting", e)
            await self._teardown()
            return
        except BackendProtocolError as e:
            logger.debug("Abandoned exchange ended with an error: %s", e)
        self._dirty = False

    async def _drain(self, session: Session) -> None:
        async with aclosing(self._handle.receive(session)) as events:
            async for _ in events:
                pass

    async def _exchange(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        """Run one call end to end, yielding text deltas and the final chunk."""
        messages = request.messages
        if self.sanitize_prompts:
            matched = sorted({rule for msg in messages for rule in detect_sensitive_info(msg.text)})
            if matched:
                logger.debug("Sanitizing prompt; matched %s", ", ".join(matched))
            messages = sanitize_messages(messages)
        prompt = build_prompt(messages)

        async with self._call_lock:
            await self._gate()
            if self._dirty and self.is_connected:
                await self._recover_abandoned()
            session = await self.ensure_connected()
            session.request_count += 1
            model = self.models.resolve(request.model) if request.model else self._model
            if not self.models.is_known(model):
                logger.debug("Model %s is not in the catalog; passing it through", model)

            finished = False
            try:
                if session.model != model:
                    await self._handle.configure(session, model)
                # From here until the completion event the connection carries
                # this exchange; leaving early makes it the next caller's to drain.
                self._dirty = True
                await self._handle.send(session, prompt)
                async with aclosing(self._handle.receive(session)) as events:
                    async for event in events:
                        if event.kind is EventKind.TEXT:
                            yield StreamChunk(text=event.text)
                        elif event.kind is EventKind.FINISH:
                            finished = True
                            self._dirty = False
                            yield StreamChunk(stop_reason=event.stop_reason or "end_turn")
                if not finished:
                    raise BackendConnectionError("backend closed the connection mid-response")
            except SessionError as e:
                await self._teardown()
                raise BackendConnectionError(f"backend connection lost: {e}") from e
            except (BackendConnectionError, BackendTimeoutError) as e:
                logger.error("Backend exchange failed: %s", redact_for_log(str(e)))
                await self._teardown()
                raise
            except BackendProtocolError as e:
                # The turn ended with an error; the connection is still usable.
                self._dirty = False
                logger.error("Backend rejected prompt: %s", redact_for_log(str(e)))
                raise

    async def chat(self, request: ChatRequest) -> ChatResult:
        parts: list[str] = []
        stop_reason = "end_turn"
        async with aclosing(self._exchange(request)) as exchange:
            async for chunk in exchange:
                if chunk.text:
                    parts.append(chunk.text)
                if chunk.stop_reason:
                    stop_reason = chunk.stop_reason
        return ChatResult(
            text="".join(parts),
            model=request.model or self._model,
            stop_reason=stop_reason,
        )

    async def chat_stream(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        """Role announcement, text deltas, then a chunk with the stop reason.

        Nothing is yielded until the backend produced its first event, so
        pacing and connection failures surface before the stream starts.
        """
        exchange = self._exchange(request)
        try:
            try:
                first = await exchange.__anext__()
            except StopAsyncIteration:
                return
            yield StreamChunk(role="assistant")
            yield first
            async for chunk in exchange:
                yield chunk
        finally:
            await exchange.aclose()
