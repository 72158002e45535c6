"""Wire format abstraction for the two chat APIs the bridge speaks.

Clients talk either the OpenAI chat-completions schema or the Anthropic
messages schema.  ``PayloadFormat`` is the strategy interface; concrete
subclasses turn a request body into a ``ChatRequest`` and turn results and
stream chunks back into the client's response shape.

Usage:

    fmt = get_format("openai")
    request = fmt.parse_request(body)
    result = await manager.chat(request)
    return fmt.build_response(result, fmt.new_response_id())
"""

from __future__ import annotations

import json
import time
import uuid
from abc import ABC, abstractmethod

from ..types import ChatMessage, ChatRequest, ChatResult, ContentPart, StreamChunk, ValidationError

# ---------------------------------------------------------------------------
# Shared helpers (provider-agnostic)
# ---------------------------------------------------------------------------


def _sse(data: dict | str, event: str | None = None) -> bytes:
    """Encode one server-sent event."""
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    if event:
        return f"event: {event}\ndata: {payload}\n\n".encode()
    return f"data: {payload}\n\n".encode()


def _require_messages(body: object) -> list:
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    messages = body.get("messages")
    if not messages:
        raise ValidationError("messages is required")
    if not isinstance(messages, list):
        raise ValidationError("messages must be an array")
    for msg in messages:
        if not isinstance(msg, dict):
            raise ValidationError("each message must be an object")
    return messages


def _number(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


# ---------------------------------------------------------------------------
# ABC
# ---------------------------------------------------------------------------

class PayloadFormat(ABC):
    """Strategy interface for one chat API's request/response schema."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier: ``"openai"`` or ``"anthropic"``."""

    # -- Request parsing -----------------------------------------------------

    @abstractmethod
    def parse_message(self, msg: dict) -> ChatMessage:
        """Convert one wire message into a ``ChatMessage``."""

    def parse_request(self, body: dict) -> ChatRequest:
        """Validate *body* and convert it into a ``ChatRequest``.

        Raises ``ValidationError`` for a missing, empty or malformed
        ``messages`` array.
        """
        messages = [self.parse_message(m) for m in _require_messages(body)]
        model = body.get("model") or ""
        if not isinstance(model, str):
            raise ValidationError("model must be a string")
        max_tokens = _number(body.get("max_tokens"))
        return ChatRequest(
            model=model,
            messages=messages,
            stream=bool(body.get("stream", False)),
            temperature=_number(body.get("temperature")),
            max_tokens=int(max_tokens) if max_tokens is not None else None,
        )

    def parse_content(self, content: object) -> str | tuple[ContentPart, ...]:
        """Plain string content stays a string; a block list becomes parts."""
        if content is None:
            return ""
        if isinstance(content, str):
            return content
        if not isinstance(content, list):
            raise ValidationError("message content must be a string or an array")
        parts: list[ContentPart] = []
        for block in content:
            if isinstance(block, str):
                parts.append(ContentPart(type="text", text=block))
                continue
            if not isinstance(block, dict):
                raise ValidationError("content parts must be objects")
            part = self._parse_block(block)
            if part is not None:
                parts.append(part)
        return tuple(parts)

    @abstractmethod
    def _parse_block(self, block: dict) -> ContentPart | None:
        """Convert one content block; ``None`` drops blocks the bridge ignores."""

    # -- Responses -----------------------------------------------------------

    @abstractmethod
    def new_response_id(self) -> str:
        """Fresh identifier in this API's style."""

    @abstractmethod
    def build_response(self, result: ChatResult, response_id: str) -> dict:
        """Non-streaming response body for *result*."""

    # -- SSE encoding --------------------------------------------------------

    @abstractmethod
    def encode_chunk(
        self, chunk: StreamChunk, response_id: str, model: str, created: int,
    ) -> list[bytes]:
        """SSE events for one ``StreamChunk``."""

    def stream_epilogue(self) -> list[bytes]:
        """Events written after the final chunk."""
        return []

    @abstractmethod
    def encode_error(self, message: str) -> bytes:
        """SSE event reporting a failure after the stream started."""

    @staticmethod
    def error_body(message: str) -> dict:
        return {"error": message}


# ---------------------------------------------------------------------------
# OpenAI chat completions
# ---------------------------------------------------------------------------

_OPENAI_FINISH = {
    "end_turn": "stop",
    "max_tokens": "length",
    "refusal": "content_filter",
}


class OpenAIFormat(PayloadFormat):
    """``POST /v1/chat/completions``."""

    @property
    def name(self) -> str:
        return "openai"

    def parse_message(self, msg: dict) -> ChatMessage:
        role = msg.get("role") or "user"
        if role == "developer":
            role = "system"
        elif not isinstance(role, str):
            role = str(role)
        return ChatMessage(role=role, content=self.parse_content(msg.get("content")))

    def _parse_block(self, block: dict) -> ContentPart | None:
        kind = block.get("type")
        if kind == "text":
            return ContentPart(type="text", text=block.get("text") or "")
        if kind == "image_url":
            image = block.get("image_url")
            url = image.get("url", "") if isinstance(image, dict) else image or ""
            return ContentPart(type="image", image_url=url)
        return None

    def new_response_id(self) -> str:
        return f"chatcmpl-{uuid.uuid4().hex[:24]}"

    @staticmethod
    def finish_reason(stop_reason: str) -> str:
        return _OPENAI_FINISH.get(stop_reason, "stop")

    def build_response(self, result: ChatResult, response_id: str) -> dict:
        return {
            "id": response_id,
            "object": "chat.completion",
            "created": int(time.time()),
            "model": result.model,
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": result.text},
                "finish_reason": self.finish_reason(result.stop_reason),
            }],
            "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
        }

    def encode_chunk(
        self, chunk: StreamChunk, response_id: str, model: str, created: int,
    ) -> list[bytes]:
        if chunk.role:
            delta, finish = {"role": chunk.role}, None
        elif chunk.is_final:
            delta, finish = {}, self.finish_reason(chunk.stop_reason)
        else:
            delta, finish = {"content": chunk.text or ""}, None
        return [_sse({
            "id": response_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish}],
        })]

    def stream_epilogue(self) -> list[bytes]:
        return [_sse("[DONE]")]

    def encode_error(self, message: str) -> bytes:
        return _sse({"error": {"message": message, "type": "backend_error"}})


# ---------------------------------------------------------------------------
# Anthropic messages
# ---------------------------------------------------------------------------

_ANTHROPIC_STOP = {"end_turn", "max_tokens", "refusal"}


class AnthropicFormat(PayloadFormat):
    """``POST /v1/messages``; a top-level ``system`` becomes a system message."""

    @property
    def name(self) -> str:
        return "anthropic"

    def parse_request(self, body: dict) -> ChatRequest:
        request = super().parse_request(body)
        system = body.get("system")
        if system:
            content = self.parse_content(system)
            request.messages.insert(0, ChatMessage(role="system", content=content))
        return request

    def parse_message(self, msg: dict) -> ChatMessage:
        role = "assistant" if msg.get("role") == "assistant" else "user"
        content = self.parse_content(msg.get("content"))
        if not isinstance(content, str):
            # Text blocks are fragments of one text here, not separate lines.
            text = "".join(p.text for p in content if p.type == "text")
            images = tuple(p for p in content if p.type != "text")
            content = (ContentPart(type="text", text=text),) + images if images else text
        return ChatMessage(role=role, content=content)

    def _parse_block(self, block: dict) -> ContentPart | None:
        kind = block.get("type")
        if kind == "text":
            return ContentPart(type="text", text=block.get("text") or "")
        if kind == "image":
            source = block.get("source") or {}
            if source.get("type") == "url":
                return ContentPart(type="image", image_url=source.get("url", ""))
            media_type = source.get("media_type", "application/octet-stream")
            return ContentPart(
                type="image", image_url=f"data:{media_type};base64,{source.get('data', '')}",
            )
        return None

    def new_response_id(self) -> str:
        return f"msg_{uuid.uuid4().hex[:24]}"

    @staticmethod
    def stop_reason(stop_reason: str) -> str:
        return stop_reason if stop_reason in _ANTHROPIC_STOP else "end_turn"

    def build_response(self, result: ChatResult, response_id: str) -> dict:
        return {
            "id": response_id,
            "type": "message",
            "role": "assistant",
            "content": [{"type": "text", "text": result.text}],
            "model": result.model,
            "stop_reason": self.stop_reason(result.stop_reason),
            "stop_sequence": None,
            "usage": {"input_tokens": 0, "output_tokens": 0},
        }

    def encode_chunk(
        self, chunk: StreamChunk, response_id: str, model: str, created: int,
    ) -> list[bytes]:
        if chunk.role:
            return [
                _sse({
                    "type": "message_start",
                    "message": {
                        "id": response_id,
                        "type": "message",
                        "role": chunk.role,
                        "content": [],
                        "model": model,
                        "stop_reason": None,
                        "stop_sequence": None,
                        "usage": {"input_tokens": 0, "output_tokens": 0},
                    },
                }, event="message_start"),
                _sse({
                    "type": "content_block_start",
                    "index": 0,
                    "content_block": {"type": "text", "text": ""},
                }, event="content_block_start"),
            ]
        if chunk.is_final:
            return [
                _sse({"type": "content_block_stop", "index": 0}, event="content_block_stop"),
                _sse({
                    "type": "message_delta",
                    "delta": {"stop_reason": self.stop_reason(chunk.stop_reason), "stop_sequence": None},
                    "usage": {"output_tokens": 0},
                }, event="message_delta"),
                _sse({"type": "message_stop"}, event="message_stop"),
            ]
        return [_sse({
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": chunk.text or ""},
        }, event="content_block_delta")]

    def encode_error(self, message: str) -> bytes:
        return _sse(
            {"type": "error", "error": {"type": "api_error", "message": message}},
            event="error",
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_FORMATS: dict[str, PayloadFormat] = {
    "openai": OpenAIFormat(),
    "anthropic": AnthropicFormat(),
}


def get_format(name: str) -> PayloadFormat:
    """Return the format instance by name. Raises ``KeyError`` if unknown."""
    return _FORMATS[name]
