"""
Restricted context worker process.

Usage:
    python -m restricted.main --url ws://127.0.0.1:8000/ws/context \\
        --engine my_engines.vosk:build --language ja-JP --grant-microphone

The engine is loaded from a "module:attribute" factory. Without one the
context still starts and announces readiness, but INITIALIZE fails with
EngineUnsupportedError.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import sys

from websockets.exceptions import WebSocketException

from channel.websocket import WebSocketContextClient
from constants import DEFAULT_LANGUAGE, ENGINE_RETRY_BASE_DELAY_MS
from observability.logger import log_event
from restricted.engine import EngineFactory, EngineOptions, RecognitionEngine
from restricted.errors import EngineUnsupportedError
from restricted.permission import StaticPermission
from restricted.runtime import RestrictedContextRuntime


def _unsupported_engine(options: EngineOptions) -> RecognitionEngine:
    raise EngineUnsupportedError()


def load_engine_factory(spec: str | None) -> EngineFactory:
    """Resolve "package.module:attribute" to an engine factory."""
    if not spec:
        return _unsupported_engine

    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Engine must be given as module:attribute, got {spec!r}")

    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    if not callable(factory):
        raise ValueError(f"Engine factory {spec!r} is not callable")
    return factory


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="restricted.main",
        description="Run a restricted speech recognition context.",
    )
    parser.add_argument("--url", required=True, help="Coordinator context link URL")
    parser.add_argument("--engine", default=None, help="Engine factory as module:attribute")
    parser.add_argument("--language", default=DEFAULT_LANGUAGE)
    parser.add_argument("--grant-microphone", action="store_true")
    parser.add_argument(
        "--retry-base-delay-ms",
        type=int,
        default=ENGINE_RETRY_BASE_DELAY_MS,
    )
    return parser


async def run(args: argparse.Namespace) -> None:
    if args.engine is None:
        log_event({"event_type": "ENGINE_NOT_CONFIGURED", "url": args.url})

    client = WebSocketContextClient(args.url)
    runtime = RestrictedContextRuntime(
        client,
        engine_factory=load_engine_factory(args.engine),
        permission=StaticPermission(granted=args.grant_microphone),
        retry_base_delay_ms=args.retry_base_delay_ms,
        language=args.language,
    )

    try:
        await client.run(runtime.handle_request, on_connected=runtime.announce_ready)
    finally:
        await runtime.destroy()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        return 0
    except (OSError, ValueError, ImportError, WebSocketException) as e:
        log_event({
            "event_type": "CONTEXT_PROCESS_FAILED",
            "exception": type(e).__name__,
            "message": str(e),
        })
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
