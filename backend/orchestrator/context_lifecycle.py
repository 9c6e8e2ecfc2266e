"""
Context lifecycle manager.

Responsibilities:
- Ensure at most one restricted context exists
- Create it on demand
- Record readiness when the context announces it

Existence is always asked of the host, never inferred from local flags:
a context may outlive the coordinator state that created it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol

from observability.logger import log_event


@dataclass(frozen=True)
class ContextHandle:
    exists: bool = False
    ready: bool = False

    def __post_init__(self) -> None:
        if self.ready and not self.exists:
            raise ValueError("ContextHandle cannot be ready without existing")


class ContextCreationError(Exception):
    """The host refused or failed to create a restricted context."""


class ContextHost(Protocol):
    """Where restricted contexts live (same loop, worker process, ...)."""

    async def has_context(self) -> bool:
        ...

    async def create_context(self) -> None:
        """Raises ContextCreationError on failure."""
        ...

    async def close_context(self) -> None:
        ...


class ContextLifecycleManager:
    """Sole writer of the ContextHandle."""

    def __init__(self, host: ContextHost) -> None:
        self._host = host
        self._handle = ContextHandle()
        self._lock = asyncio.Lock()

    @property
    def handle(self) -> ContextHandle:
        return self._handle

    async def ensure_exists(self) -> bool:
        """
        Make sure a context exists.

        Returns True if this call initiated creation. Readiness arrives
        later through mark_ready().

        Raises:
            ContextCreationError: creation failed; nothing was created
        """
        async with self._lock:
            if await self._host.has_context():
                if not self._handle.exists:
                    # Outlived our record. It announced readiness long ago.
                    self._handle = ContextHandle(exists=True, ready=True)
                    log_event({"event_type": "CONTEXT_ADOPTED"})
                return False

            # Readiness may land while creation is awaited; keep it.
            self._handle = ContextHandle(exists=True, ready=False)
            try:
                await self._host.create_context()
            except ContextCreationError as e:
                self._handle = ContextHandle()
                log_event({"event_type": "CONTEXT_CREATION_FAILED", "error": str(e)})
                raise
            except Exception as exc:
                self._handle = ContextHandle()
                log_event({
                    "event_type": "CONTEXT_CREATION_FAILED",
                    "exception": type(exc).__name__,
                    "error": str(exc),
                })
                raise ContextCreationError(str(exc)) from exc

            log_event({"event_type": "CONTEXT_CREATED", "ready": self._handle.ready})
            return True

    async def exists(self) -> bool:
        found = await self._host.has_context()
        if not found and self._handle.exists:
            self.mark_absent()
        return found

    def mark_ready(self) -> None:
        self._handle = ContextHandle(exists=True, ready=True)

    def mark_absent(self) -> None:
        if self._handle.exists:
            log_event({"event_type": "CONTEXT_MARKED_ABSENT", "was_ready": self._handle.ready})
        self._handle = ContextHandle()

    async def close(self) -> None:
        async with self._lock:
            try:
                await self._host.close_context()
            finally:
                self._handle = ContextHandle()
                log_event({"event_type": "CONTEXT_CLOSED"})
