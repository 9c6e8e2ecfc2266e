"""
Control-surface gateway.

Responsibilities:
- Owns the ControlSession for one /ws connection
- Tracks connection_status independently of coordinator state
- Routes inbound request frames to the coordinator
- Queues responses and coordinator notifications for the client

NOT responsible for:
- Any state machine logic
- Owning the coordinator (it is shared, app-scoped)
- Socket IO (server.routes pumps the session queue)
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable
from uuid import uuid4

from observability.logger import log_event
from orchestrator.runtime import CoordinatorRuntime
from protocol.messages import (
    Message,
    ProtocolError,
    RequestFrame,
    Response,
    decode_frame,
    event_frame,
    response_frame,
)
from session.connection_status import ConnectionStatus
from session.control_session import ControlSession


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _new_session_id() -> str:
    return f"ctl_{uuid4().hex[:12]}"


@dataclass(frozen=True)
class GatewayResult:
    """JSON frames to send to the client right away."""
    outbound_json: tuple[dict[str, Any], ...] = ()


class ControlGateway:
    """One gateway == one control-surface connection."""

    def __init__(self, *, coordinator: CoordinatorRuntime) -> None:
        self._coordinator = coordinator
        self.session: ControlSession | None = None
        self._unsubscribe: Callable[[], None] | None = None

    async def on_ws_connect(self) -> GatewayResult:
        session = ControlSession(session_id=_new_session_id())
        session.connection_status = ConnectionStatus.UP
        self.session = session

        self._unsubscribe = self._coordinator.subscribe(self._on_coordinator_event)

        state = self._coordinator.state
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "CONTROL_CONNECTED",
            **session.log_context(),
            "state": state.state.value,
        })

        init_msg: dict[str, Any] = {
            "type": "SESSION_INIT",
            "session_id": session.session_id,
            "state": state.state.value,
            "language": state.language,
        }
        return GatewayResult(outbound_json=(init_msg,) + session.drain_control())

    async def on_json_message(self, payload: str) -> None:
        """
        Serve one inbound frame. The response is queued on the session.

        May wait for a whole start handshake; callers run it in its own task.
        """
        session = self.session
        if session is None:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "MESSAGE_WITHOUT_SESSION",
                "payload_preview": payload[:100],
            })
            return

        try:
            frame = decode_frame(payload)
        except ProtocolError as e:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "CONTROL_FRAME_DROPPED",
                "session_id": session.session_id,
                "error": str(e),
                "payload_preview": payload[:100],
            })
            return

        if not isinstance(frame, RequestFrame):
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "CONTROL_FRAME_IGNORED",
                "session_id": session.session_id,
                "kind": type(frame).__name__,
            })
            return

        try:
            response = await self._coordinator.handle_control_request(frame.message)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "CONTROL_REQUEST_FAILED",
                "session_id": session.session_id,
                "message_type": frame.message.type.value,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            response = Response.failed(str(exc))

        session.enqueue_control(response_frame(frame.request_id, response))

    async def on_ws_disconnect(self, reason: str | None = None) -> GatewayResult:
        session = self.session
        if session is None:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "WS_DISCONNECT_WITHOUT_SESSION",
                "reason": reason,
            })
            return GatewayResult()

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        session.connection_status = ConnectionStatus.DOWN
        undelivered = session.drain_control()

        log_event({
            "ts_ms": _now_ms(),
            "event_type": "CONTROL_DISCONNECTED",
            **session.log_context(),
            "reason": reason,
            "undelivered": len(undelivered),
        })
        return GatewayResult(outbound_json=undelivered)

    async def _on_coordinator_event(self, message: Message) -> None:
        if self.session is not None:
            self.session.enqueue_control(event_frame(message))
