"""
Control-surface session container.

- One per /ws connection
- Owned and mutated by ControlGateway
- Buffers outbound frames for the route's send pump
- Contains no orchestration logic
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from session.connection_status import ConnectionStatus


@dataclass
class ControlSession:
    """Mutable runtime container for one control-surface connection."""

    session_id: str
    created_at: float = field(default_factory=time.time)
    connection_status: ConnectionStatus = ConnectionStatus.DOWN

    def __post_init__(self) -> None:
        self._control_out: deque[dict[str, Any]] = deque()
        self._has_control = asyncio.Event()

    def log_context(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "connection_status": self.connection_status.value,
        }

    def enqueue_control(self, msg: dict[str, Any]) -> None:
        """Buffer a frame for delivery, FIFO."""
        self._control_out.append(msg)
        self._has_control.set()

    def drain_control(self) -> tuple[dict[str, Any], ...]:
        """
        Atomically drain all pending control frames.

        Returns an empty tuple if nothing is pending.
        """
        self._has_control.clear()
        if not self._control_out:
            return ()
        out = tuple(self._control_out)
        self._control_out.clear()
        return out

    async def wait_for_control(self) -> tuple[dict[str, Any], ...]:
        """Block until at least one frame is pending, then drain."""
        await self._has_control.wait()
        return self.drain_control()
