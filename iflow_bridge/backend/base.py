"""Backend transport interface.

This is the whole contract the session layer needs from the backend
conversational process: start it in pure-conversation mode, pick a model,
send a prompt, read events back, and shut it down.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..types import BackendEvent, BackendOptions


class Backend(ABC):
    """One connection to a backend process."""

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    async def start(self, options: BackendOptions) -> None:
        """Open the connection and apply *options*.

        Raises ``BackendConnectionError`` if the process cannot be reached
        or refuses the configuration.
        """

    @abstractmethod
    async def set_model(self, model: str) -> None: ...

    @abstractmethod
    async def send_prompt(self, prompt: str) -> None:
        """Submit *prompt*; its events are read back with :meth:`next_event`."""

    @abstractmethod
    async def next_event(self) -> BackendEvent | None:
        """Next event of the current exchange, or ``None`` once the connection closed."""

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""
