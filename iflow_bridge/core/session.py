"""Session + SessionHandle: the single live connection to the backend."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Callable

from ..backend.base import Backend
from ..types import (
    BackendConnectionError,
    BackendEvent,
    BackendOptions,
    BackendProtocolError,
    BackendTimeoutError,
    EventKind,
    SessionError,
)

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """One logical connection. Owned exclusively by the SessionManager."""
    backend: Backend
    model: str
    created_at: float        # ms, same clock as the pacing ledger
    number: int              # 1-based, counts sessions since process start
    request_count: int = 0


class SessionHandle:
    """Opens, configures, uses and closes backend connections.

    ``connect`` is the only place a new connection is constructed; every
    other operation requires a session returned by it.
    """

    def __init__(
        self,
        backend_factory: Callable[[], Backend],
        options: BackendOptions,
        *,
        response_timeout: float | None = 300.0,
    ) -> None:
        self._factory = backend_factory
        self.options = options
        self.response_timeout = response_timeout
        self._sessions_opened = 0

    @property
    def sessions_opened(self) -> int:
        return self._sessions_opened

    async def connect(self, model: str, *, created_at: float = 0.0) -> Session:
        backend = self._factory()
        try:
            await backend.start(self.options)
            await backend.set_model(model)
        except BackendConnectionError:
            await backend.close()
            raise
        except (BackendProtocolError, OSError) as e:
            await backend.close()
            raise BackendConnectionError(f"backend setup failed: {e}") from e
        self._sessions_opened += 1
        return Session(
            backend=backend,
            model=model,
            created_at=created_at,
            number=self._sessions_opened,
        )

    async def configure(self, session: Session, model: str) -> None:
        self._require(session)
        # Unknown until the backend acknowledges, so an interrupted switch is redone.
        session.model = ""
        await session.backend.set_model(model)
        session.model = model

    async def send(self, session: Session, prompt: str) -> None:
        self._require(session)
        await session.backend.send_prompt(prompt)

    async def receive(self, session: Session) -> AsyncIterator[BackendEvent]:
        """Yield events up to and including the first completion event.

        Ends early if the connection closes. An ERROR event is raised as
        ``BackendProtocolError``; a silent backend past ``response_timeout``
        raises ``BackendTimeoutError``.
        """
        self._require(session)
        while True:
            try:
                event = await asyncio.wait_for(
                    session.backend.next_event(), self.response_timeout,
                )
            except asyncio.TimeoutError as e:
                raise BackendTimeoutError(
                    f"no backend event within {self.response_timeout}s"
                ) from e
            if event is None:
                return
            if event.kind is EventKind.ERROR:
                raise BackendProtocolError(event.text or "backend reported an error")
            yield event
            if event.kind is EventKind.FINISH:
                return

    async def disconnect(self, session: Session | None) -> None:
        if session is None:
            return
        await session.backend.close()

    def is_connected(self, session: Session | None) -> bool:
        return session is not None and session.backend.is_connected

    def _require(self, session: Session | None) -> None:
        if not self.is_connected(session):
            raise SessionError("no live backend connection; call connect() first")
