"""Sensitive-text replacement for prompts and log lines.

Pure functions.  Replacements are natural-looking (``/home/user``,
``sk-xxxx...``) rather than ``[REDACTED]`` so sanitized prompts read like
ordinary text.
"""

from __future__ import annotations

import re
from dataclasses import replace

from ..types import ChatMessage

# Secrets first: later file-name rules rewrite words like "token" and would
# otherwise hide the assignments these patterns look for.
CONTENT_REPLACEMENTS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"sk-[a-zA-Z0-9]{20,}", re.I), "sk-xxxxxxxxxxxxxxxxxxxx"),
    (re.compile(r"ms-[a-zA-Z0-9-]{10,}", re.I), "ms-xxxxxxxxxx"),
    (re.compile(r"api[_-]?key\s*[:=]\s*['\"]?[a-zA-Z0-9_-]{10,}", re.I), 'api_key: "xxx"'),
    (re.compile(r"token\s*[:=]\s*['\"]?[a-zA-Z0-9_-]{10,}", re.I), 'token: "xxx"'),
    (re.compile(r"localhost:\d{4,5}", re.I), "localhost:8080"),
    (re.compile(r"127\.0\.0\.1:\d{4,5}"), "127.0.0.1:8080"),
]

PATH_REPLACEMENTS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"/Users/[^/\s]+", re.I), "/home/user"),
    (re.compile(r"/home/[^/\s]+", re.I), "/home/user"),
    (re.compile(r"~/[^/\s]*"), "~/workspace"),
    (re.compile(r"\.iflow/", re.I), ".config/"),
]

PROJECT_REPLACEMENTS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\bapi-server\b", re.I), "server"),
    (re.compile(r"\bsdk-client\b", re.I), "client"),
    (re.compile(r"\bdb-storage\b", re.I), "database"),
    (re.compile(r"\brouter-service\b", re.I), "router"),
]

FILE_REPLACEMENTS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"settings\.json", re.I), "config.json"),
    (re.compile(r"credentials", re.I), "auth"),
    (re.compile(r"api[_-]?key", re.I), "key"),
    (re.compile(r"secret", re.I), "private"),
    (re.compile(r"token", re.I), "auth"),
    (re.compile(r"password", re.I), "pass"),
    (re.compile(r"\.pem\b", re.I), ".key"),
]

_ALL_RULES = CONTENT_REPLACEMENTS + PATH_REPLACEMENTS + PROJECT_REPLACEMENTS + FILE_REPLACEMENTS


def sanitize_string(text: str | None) -> str:
    """Apply every replacement rule to *text*. ``None`` becomes ``""``."""
    if text is None:
        return ""
    if not isinstance(text, str):
        text = str(text)
    for pattern, replacement in _ALL_RULES:
        text = pattern.sub(replacement, text)
    return text


def sanitize_messages(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Sanitize the text of every message; image parts are left alone."""
    out: list[ChatMessage] = []
    for msg in messages:
        if isinstance(msg.content, str):
            out.append(replace(msg, content=sanitize_string(msg.content)))
        else:
            out.append(replace(msg, content=tuple(
                replace(p, text=sanitize_string(p.text)) if p.type == "text" else p
                for p in msg.content
            )))
    return out


def detect_sensitive_info(text: str) -> list[str]:
    """Return the (truncated) source of every secret/path/project rule that matches."""
    detected: list[str] = []
    for pattern, _ in PATH_REPLACEMENTS + PROJECT_REPLACEMENTS + CONTENT_REPLACEMENTS:
        if pattern.search(text):
            detected.append(pattern.pattern[:50])
    return detected


def redact_for_log(text: str, max_length: int = 200) -> str:
    """Sanitize and truncate *text* for a log line."""
    redacted = sanitize_string(text)
    if len(redacted) > max_length:
        redacted = redacted[:max_length] + "..."
    return redacted
