"""CLI: iflow-bridge serve, models, config validate."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from ..config import load_config, validate_config
from ..core.models import ModelRegistry


class _SuppressCancelled(logging.Filter):
    """Drop CancelledError tracebacks uvicorn logs when it force-closes SSE streams."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.exc_info and record.exc_info[0] is asyncio.CancelledError:
            return False
        return True


class _SuppressHealthAccess(logging.Filter):
    """Hide repetitive GET /health access lines."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        return not ("GET /health" in msg and "200" in msg)


def _load(args):
    try:
        return load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_serve(args):
    """Start the HTTP gateway."""
    import uvicorn

    from ..proxy import create_app

    config = _load(args)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.silent:
        config.silent = True

    errors = validate_config(config)
    if errors:
        for err in errors:
            print(f"Config error: {err}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())
    logging.getLogger("uvicorn.access").addFilter(_SuppressHealthAccess())

    app = create_app(config)
    host, port = config.server.host, config.server.port
    print(f"iflow-bridge on http://{host}:{port} -> {' '.join(config.backend.command)}")
    print(f"  OpenAI endpoint:    http://{host}:{port}/v1/chat/completions")
    print(f"  Anthropic endpoint: http://{host}:{port}/v1/messages")
    uvicorn.run(
        app, host=host, port=port, log_level="info",
        timeout_graceful_shutdown=2,
    )


def cmd_models(args):
    """Print the model catalog and alias table."""
    config = _load(args)
    registry = ModelRegistry(config.models.aliases, config.models.catalog)
    default = registry.resolve(config.backend.default_model)
    print("Models:")
    for entry in registry.catalog:
        marker = " (default)" if entry["id"] == default else ""
        print(f"  {entry['id']:<22} {entry.get('name', '')}{marker}")
    print("Aliases:")
    for alias, target in sorted(registry.aliases.items()):
        print(f"  {alias:<22} -> {target}")


def cmd_config_validate(args):
    """Validate config file."""
    config = _load(args)
    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)

    p = config.pacing
    print("Config is valid.")
    print(f"  Listen: {config.server.host}:{config.server.port}")
    print(f"  Backend: {' '.join(config.backend.command)} (model {config.backend.default_model})")
    print(f"  Pacing: {p.min_interval_ms}-{p.max_interval_ms}ms, {p.max_requests_per_minute}/min")
    print(
        f"  Rotation: {p.max_requests_per_session} requests or "
        f"{int(p.max_session_age_s)}s"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iflow-bridge",
        description="OpenAI/Anthropic-compatible gateway to the iFlow CLI",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP gateway")
    serve_parser.add_argument("--host", help="Listen address (default from config)")
    serve_parser.add_argument("--port", "-p", type=int, help="Listen port (default from config)")
    serve_parser.add_argument(
        "--silent", action="store_true",
        help="Log connect/rotation/pacing lines at DEBUG instead of INFO",
    )

    # models
    subparsers.add_parser("models", help="List supported models and aliases")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    return parser


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "models":
        cmd_models(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: iflow-bridge config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
