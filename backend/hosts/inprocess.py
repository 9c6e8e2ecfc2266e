"""
Restricted context hosted on the coordinator's own event loop.

The context is a RestrictedContextRuntime attached to a LocalLink.
Readiness is announced from a separate task, after create_context()
has returned, the same way a freshly opened page reports in later.
"""

from __future__ import annotations

import asyncio
from typing import Callable

from channel.local import LocalLink
from orchestrator.context_lifecycle import ContextCreationError
from observability.logger import log_event
from restricted.runtime import RestrictedContextRuntime


RuntimeFactory = Callable[[LocalLink], RestrictedContextRuntime]


class InProcessContextHost:
    """ContextHost for a single in-process restricted context."""

    def __init__(
        self,
        link: LocalLink,
        runtime_factory: RuntimeFactory,
        *,
        announce_ready: bool = True,
    ) -> None:
        self._link = link
        self._runtime_factory = runtime_factory
        self._announce_ready = announce_ready
        self._runtime: RestrictedContextRuntime | None = None
        self._ready_task: asyncio.Task[None] | None = None
        self.created = 0

    @property
    def runtime(self) -> RestrictedContextRuntime | None:
        return self._runtime

    async def has_context(self) -> bool:
        return self._runtime is not None and self._link.attached

    async def create_context(self) -> None:
        if self._runtime is not None:
            raise ContextCreationError("A restricted context already exists")

        runtime = self._runtime_factory(self._link)
        self._runtime = runtime
        self._link.attach(runtime.handle_request)
        self.created += 1

        log_event({"event_type": "INPROCESS_CONTEXT_CREATED", "count": self.created})

        if self._announce_ready:
            self._ready_task = asyncio.create_task(runtime.announce_ready())

    async def announce_ready(self) -> None:
        """Emit readiness by hand (when constructed with announce_ready=False)."""
        if self._runtime is not None:
            await self._runtime.announce_ready()

    async def close_context(self) -> None:
        runtime = self._runtime
        self._runtime = None
        self._link.detach()

        task = self._ready_task
        self._ready_task = None
        if task is not None and not task.done():
            task.cancel()

        if runtime is not None:
            await runtime.destroy()
            await runtime.wait_idle()
