"""AcpBackend: drives the backend CLI over stdio with JSON-RPC 2.0.

The CLI is launched as a subprocess and exchanges one JSON object per line
on stdin/stdout (Agent Client Protocol):

    initialize -> session/new -> session/set_model -> session/prompt

While a ``session/prompt`` call is open the agent streams
``session/update`` notifications; the prompt's response carries the stop
reason and marks the end of the turn.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os

from ..types import (
    BackendConnectionError,
    BackendEvent,
    BackendOptions,
    BackendProtocolError,
    EventKind,
)
from .base import Backend

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
METHOD_NOT_FOUND = -32601


def _error_message(error: object) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


class AcpBackend(Backend):
    """Backend connection backed by one CLI subprocess."""

    _close_grace_s: float = 3.0
    _stream_limit: int = 16 * 1024 * 1024  # longest accepted stdout line

    def __init__(self, command: list[str], *, connect_timeout: float = 30.0) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.connect_timeout = connect_timeout
        self._proc: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._prompt_ids: set[int] = set()
        self._events: asyncio.Queue[BackendEvent | None] = asyncio.Queue()
        self._write_lock = asyncio.Lock()
        self._next_id = 0
        self._session_id: str | None = None
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return (
            self._proc is not None
            and self._proc.returncode is None
            and self._session_id is not None
            and not self._closed
        )

    @property
    def session_id(self) -> str | None:
        return self._session_id

    # -- lifecycle -----------------------------------------------------------

    async def start(self, options: BackendOptions) -> None:
        if self._proc is not None:
            raise BackendConnectionError("backend already started")
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=options.cwd,
                limit=self._stream_limit,
            )
        except OSError as e:
            raise BackendConnectionError(
                f"cannot launch backend {self.command[0]!r}: {e}"
            ) from e

        self._reader_task = asyncio.create_task(self._read_loop(self._proc.stdout))
        self._stderr_task = asyncio.create_task(self._log_stderr(self._proc.stderr))

        try:
            await asyncio.wait_for(self._handshake(options), self.connect_timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise BackendConnectionError(
                f"backend did not complete handshake within {self.connect_timeout}s"
            ) from e
        except BackendProtocolError as e:
            await self.close()
            raise BackendConnectionError(f"backend refused configuration: {e}") from e
        except BackendConnectionError:
            await self.close()
            raise

    async def _handshake(self, options: BackendOptions) -> None:
        await self._call("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "clientCapabilities": {
                "fs": {"readTextFile": False, "writeTextFile": False},
                "terminal": False,
            },
        })
        result = await self._call("session/new", {
            "cwd": os.path.abspath(options.cwd),
            "mcpServers": [],
            "settings": {
                "system_prompt": options.system_prompt,
                "disallowed_tools": list(options.disallowed_tools),
                "permission_mode": options.permission_mode,
                "file_access": options.file_access,
            },
        })
        session_id = result.get("sessionId") if isinstance(result, dict) else None
        if not session_id:
            raise BackendProtocolError("session/new returned no sessionId")
        self._session_id = session_id
        logger.debug("ACP session %s opened (pid=%s)", session_id, self._proc.pid)

    async def close(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        self._session_id = None
        if proc.stdin is not None:
            proc.stdin.close()
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), self._close_grace_s)
            except asyncio.TimeoutError:
                logger.warning("Backend pid=%s ignored SIGTERM, killing", proc.pid)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        tasks = [t for t in (self._reader_task, self._stderr_task) if t is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._mark_closed()

    # -- exchange ------------------------------------------------------------

    async def set_model(self, model: str) -> None:
        await self._call("session/set_model", {
            "sessionId": self._require_session(),
            "modelId": model,
        })

    async def send_prompt(self, prompt: str) -> None:
        await self._send_request("session/prompt", {
            "sessionId": self._require_session(),
            "prompt": [{"type": "text", "text": prompt}],
        }, is_prompt=True)

    async def next_event(self) -> BackendEvent | None:
        event = await self._events.get()
        if event is None:
            # Keep reporting the closed connection to later readers.
            self._events.put_nowait(None)
        return event

    # -- JSON-RPC plumbing ---------------------------------------------------

    def _require_session(self) -> str:
        if not self.is_connected:
            raise BackendConnectionError("backend connection is closed")
        return self._session_id

    async def _call(self, method: str, params: dict) -> object:
        fut = asyncio.get_running_loop().create_future()
        await self._send_request(method, params, fut)
        return await fut

    async def _send_request(
        self,
        method: str,
        params: dict,
        fut: asyncio.Future | None = None,
        *,
        is_prompt: bool = False,
    ) -> int:
        """Write a request; its reply is routed to *fut* or, for prompts, the event queue."""
        if self._proc is None or self._closed:
            raise BackendConnectionError("backend connection is closed")
        self._next_id += 1
        req_id = self._next_id
        # Registered before writing: the reply can arrive while drain() yields.
        if fut is not None:
            self._pending[req_id] = fut
        if is_prompt:
            self._prompt_ids.add(req_id)
        try:
            await self._write({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params})
        except BaseException:
            self._pending.pop(req_id, None)
            self._prompt_ids.discard(req_id)
            raise
        return req_id

    async def _write(self, message: dict) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise BackendConnectionError("backend connection is closed")
        data = (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")
        async with self._write_lock:
            try:
                proc.stdin.write(data)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise BackendConnectionError(f"backend stdin closed: {e}") from e

    async def _read_loop(self, stdout: asyncio.StreamReader) -> None:
        try:
            while True:
                line = await stdout.readline()
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Ignoring non-JSON backend output: %.200s", line)
                    continue
                if isinstance(message, dict):
                    await self._dispatch(message)
        except (ValueError, ConnectionError) as e:
            logger.warning("Backend stdout failed: %s", e)
        finally:
            self._mark_closed()

    async def _log_stderr(self, stderr: asyncio.StreamReader) -> None:
        while True:
            line = await stderr.readline()
            if not line:
                return
            logger.debug("backend: %s", line.decode("utf-8", errors="replace").rstrip())

    async def _dispatch(self, message: dict) -> None:
        if "method" in message:
            if "id" in message:
                await self._answer_agent_request(message)
            else:
                self._handle_notification(message)
            return

        req_id = message.get("id")
        error = message.get("error")
        if req_id in self._prompt_ids:
            self._prompt_ids.discard(req_id)
            if error:
                self._events.put_nowait(BackendEvent(EventKind.ERROR, text=_error_message(error)))
            else:
                result = message.get("result")
                stop_reason = result.get("stopReason") if isinstance(result, dict) else None
                self._events.put_nowait(BackendEvent(
                    EventKind.FINISH, stop_reason=stop_reason or "end_turn",
                ))
            return

        fut = self._pending.pop(req_id, None)
        if fut is None or fut.done():
            return
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            fut.set_exception(BackendProtocolError(_error_message(error), code=code))
        else:
            fut.set_result(message.get("result"))

    def _handle_notification(self, message: dict) -> None:
        if message.get("method") != "session/update":
            return
        params = message.get("params")
        update = params.get("update") if isinstance(params, dict) else None
        if not isinstance(update, dict):
            logger.debug("Ignoring malformed session update")
            return
        kind = update.get("sessionUpdate")
        if kind == "agent_message_chunk":
            content = update.get("content")
            text = None
            if isinstance(content, dict) and content.get("type") == "text":
                text = content.get("text")
            if text:
                self._events.put_nowait(BackendEvent(EventKind.TEXT, text=text))
        else:
            # thought chunks, tool calls, plans: not part of the reply text
            logger.debug("Skipping session update %r", kind)

    async def _answer_agent_request(self, message: dict) -> None:
        """Refuse everything the agent asks of us; tools and fs are disabled."""
        method = message.get("method")
        reply: dict = {"jsonrpc": "2.0", "id": message.get("id")}
        if method == "session/request_permission":
            reply["result"] = {"outcome": {"outcome": "cancelled"}}
        else:
            reply["error"] = {"code": METHOD_NOT_FOUND, "message": f"{method} is not supported"}
        try:
            await self._write(reply)
        except BackendConnectionError as e:
            logger.debug("Could not answer %s: %s", method, e)

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(BackendConnectionError("backend connection closed"))
        self._pending.clear()
        self._prompt_ids.clear()
        self._events.put_nowait(None)
