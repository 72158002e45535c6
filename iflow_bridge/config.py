"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
import os
import shlex
from pathlib import Path
from typing import Any

import yaml

from .types import (
    DEFAULT_DISALLOWED_TOOLS,
    BackendConfig,
    BridgeConfig,
    ModelsConfig,
    PacingConfig,
    ServerConfig,
)

CONFIG_FILENAMES = [
    "iflow-bridge.yaml",
    "iflow-bridge.yml",
    "iflow-bridge.json",
]

_TRUTHY = {"1", "true", "yes", "on"}


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _range(raw: Any, default: tuple[int, int]) -> tuple[int, int]:
    """Accept ``[lo, hi]`` or ``{"min": lo, "max": hi}``."""
    if raw is None:
        return default
    if isinstance(raw, dict):
        return (int(raw.get("min", default[0])), int(raw.get("max", default[1])))
    lo, hi = raw
    return (int(lo), int(hi))


def _build_config(raw: dict[str, Any]) -> BridgeConfig:
    """Build a BridgeConfig from a raw dict."""
    server_raw = raw.get("server", {})
    server = ServerConfig(
        host=server_raw.get("host", "127.0.0.1"),
        port=int(server_raw.get("port", 28002)),
        log_max_entries=int(server_raw.get("log_max_entries", 100)),
        cors=bool(server_raw.get("cors", True)),
        connect_on_startup=bool(server_raw.get("connect_on_startup", False)),
    )

    pacing_raw = raw.get("pacing", {})
    pacing = PacingConfig(
        min_interval_ms=int(pacing_raw.get("min_interval_ms", 300)),
        max_interval_ms=int(pacing_raw.get("max_interval_ms", 1500)),
        max_requests_per_minute=int(pacing_raw.get("max_requests_per_minute", 25)),
        window_ms=int(pacing_raw.get("window_ms", 60_000)),
        rate_limit_jitter_ms=_range(pacing_raw.get("rate_limit_jitter_ms"), (1000, 5000)),
        max_requests_per_session=int(pacing_raw.get("max_requests_per_session", 50)),
        max_session_age_s=float(pacing_raw.get("max_session_age_s", 30 * 60)),
        rotation_cooldown_ms=_range(pacing_raw.get("rotation_cooldown_ms"), (2000, 5000)),
    )

    backend_raw = raw.get("backend", {})
    command = backend_raw.get("command", ["iflow", "--experimental-acp"])
    if isinstance(command, str):
        command = shlex.split(command)
    backend = BackendConfig(
        command=list(command),
        cwd=backend_raw.get("cwd", "."),
        system_prompt=backend_raw.get("system_prompt", "You are a helpful AI assistant."),
        disallowed_tools=list(backend_raw.get("disallowed_tools", DEFAULT_DISALLOWED_TOOLS)),
        default_model=backend_raw.get("default_model", "glm-5"),
        connect_timeout_s=float(backend_raw.get("connect_timeout_s", 30.0)),
        response_timeout_s=float(backend_raw.get("response_timeout_s", 300.0)),
        drain_timeout_s=float(backend_raw.get("drain_timeout_s", 30.0)),
    )

    models_raw = raw.get("models", {})
    models = ModelsConfig(
        aliases=dict(models_raw.get("aliases", {})),
        catalog=list(models_raw.get("catalog", [])),
    )

    return BridgeConfig(
        server=server,
        pacing=pacing,
        backend=backend,
        models=models,
        silent=bool(raw.get("silent", False)),
        sanitize_prompts=bool(raw.get("sanitize_prompts", False)),
    )


def apply_env_overrides(
    config: BridgeConfig, environ: dict[str, str] | None = None,
) -> BridgeConfig:
    """Apply ``PORT``, ``IFLOW_BRIDGE_SILENT`` and ``IFLOW_BRIDGE_COMMAND``."""
    env = os.environ if environ is None else environ

    port = env.get("PORT")
    if port:
        config.server.port = int(port)

    silent = env.get("IFLOW_BRIDGE_SILENT")
    if silent is not None:
        config.silent = silent.strip().lower() in _TRUTHY

    command = env.get("IFLOW_BRIDGE_COMMAND")
    if command:
        config.backend.command = shlex.split(command)

    return config


def validate_config(config: BridgeConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []
    p = config.pacing

    if p.min_interval_ms < 0 or p.min_interval_ms > p.max_interval_ms:
        errors.append(
            f"min_interval_ms ({p.min_interval_ms}) must be >= 0 and <= "
            f"max_interval_ms ({p.max_interval_ms})"
        )
    for name, (lo, hi) in (
        ("rate_limit_jitter_ms", p.rate_limit_jitter_ms),
        ("rotation_cooldown_ms", p.rotation_cooldown_ms),
    ):
        if lo < 0 or lo > hi:
            errors.append(f"{name} range [{lo}, {hi}] is invalid")

    if p.max_requests_per_minute < 1:
        errors.append("max_requests_per_minute must be >= 1")
    if p.window_ms <= 0:
        errors.append("window_ms must be > 0")
    if p.max_requests_per_session < 1:
        errors.append("max_requests_per_session must be >= 1")
    if p.max_session_age_s <= 0:
        errors.append("max_session_age_s must be > 0")

    b = config.backend
    if not b.command:
        errors.append("backend.command must not be empty")
    for name in ("connect_timeout_s", "response_timeout_s", "drain_timeout_s"):
        if getattr(b, name) <= 0:
            errors.append(f"backend.{name} must be > 0")

    if not 1 <= config.server.port <= 65535:
        errors.append(f"server.port ({config.server.port}) must be in 1..65535")
    if config.server.log_max_entries < 1:
        errors.append("server.log_max_entries must be >= 1")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> BridgeConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        return apply_env_overrides(_build_config({}))

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return apply_env_overrides(_build_config(raw))
