"""
Restricted context hosted in a worker process.

The worker runs `python -m restricted.main` and dials back to the
coordinator's /ws/context endpoint. The context exists while that link is
up or the process is still running (it may not have connected yet).
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

from channel.websocket import WebSocketChannel
from config import AppConfig
from constants import CONTEXT_PROCESS_EXIT_TIMEOUT_S
from observability.logger import log_event
from orchestrator.context_lifecycle import ContextCreationError


# backend/ is the import root of every module the worker needs.
_BACKEND_DIR = Path(__file__).resolve().parent.parent


class SubprocessContextHost:
    """ContextHost backed by one worker process at a time."""

    def __init__(self, config: AppConfig, channel: WebSocketChannel) -> None:
        self._config = config
        self._channel = channel
        self._process: asyncio.subprocess.Process | None = None

    def _command(self) -> list[str]:
        cmd = [
            sys.executable,
            "-m",
            "restricted.main",
            "--url",
            self._config.resolved_context_url,
            "--language",
            self._config.default_language,
            "--retry-base-delay-ms",
            str(self._config.engine_retry_base_delay_ms),
        ]
        if self._config.recognition_engine:
            cmd += ["--engine", self._config.recognition_engine]
        if self._config.grant_microphone:
            cmd.append("--grant-microphone")
        return cmd

    async def has_context(self) -> bool:
        if self._channel.connected:
            return True
        process = self._process
        return process is not None and process.returncode is None

    async def create_context(self) -> None:
        cmd = self._command()
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(_BACKEND_DIR),
            )
        except OSError as e:
            raise ContextCreationError(f"Failed to start context process: {e}") from e

        log_event({
            "event_type": "CONTEXT_PROCESS_STARTED",
            "pid": self._process.pid,
            "url": self._config.resolved_context_url,
        })

    async def close_context(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return

        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=CONTEXT_PROCESS_EXIT_TIMEOUT_S)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()

        log_event({
            "event_type": "CONTEXT_PROCESS_STOPPED",
            "pid": process.pid,
            "returncode": process.returncode,
        })
