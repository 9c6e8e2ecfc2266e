"""
Route registration for the coordinator API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Wire the control gateway to the /ws lifecycle
- Hand the /ws/context link to the context channel
- Pull dependencies from app.state
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from channel.websocket import WebSocketChannel
from constants import CONTEXT_LINK_REFUSED_CLOSE_CODE
from observability.logger import log_event
from orchestrator.runtime import CoordinatorRuntime
from session.control_session import ControlSession
from session.gateway import ControlGateway, GatewayResult


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""
    @app.get("/health")
    async def health() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        coordinator: CoordinatorRuntime = app.state.coordinator
        handle = coordinator.context_handle
        return {
            "status": "ok",
            "state": coordinator.state.state.value,
            "language": coordinator.state.language,
            "context": {"exists": handle.exists, "ready": handle.ready},
        }

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        gateway = ControlGateway(coordinator=app.state.coordinator)
        requests: set[asyncio.Task[None]] = set()
        pump: asyncio.Task[None] | None = None

        try:
            result = await gateway.on_ws_connect()
            await _flush_gateway_result(ws, result)

            assert gateway.session is not None
            pump = asyncio.create_task(_pump_control(ws, gateway.session))

            while True:
                text = await ws.receive_text()
                # A start may wait on the whole handshake; keep reading.
                task = asyncio.create_task(gateway.on_json_message(text))
                requests.add(task)
                task.add_done_callback(requests.discard)

        except WebSocketDisconnect:
            await gateway.on_ws_disconnect(reason="client_disconnect")

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "session_id": gateway.session.session_id if gateway.session else None,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            await gateway.on_ws_disconnect(reason="server_error")

        finally:
            for task in list(requests):
                task.cancel()
            if pump is not None:
                pump.cancel()
                await asyncio.gather(pump, *requests, return_exceptions=True)

    @app.websocket("/ws/context")
    async def context_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        channel: WebSocketChannel | None = app.state.context_channel
        if channel is None:
            await ws.accept()
            await ws.close(code=CONTEXT_LINK_REFUSED_CLOSE_CODE)
            return

        await channel.serve(ws)


async def _pump_control(ws: WebSocket, session: ControlSession) -> None:
    """Send queued control frames until cancelled or the socket fails."""
    try:
        while True:
            frames = await session.wait_for_control()
            await _flush_gateway_result(ws, GatewayResult(outbound_json=frames))
    except (WebSocketDisconnect, RuntimeError) as e:
        log_event({
            "event_type": "CONTROL_PUMP_STOPPED",
            "session_id": session.session_id,
            "exception": type(e).__name__,
        })


async def _flush_gateway_result(
    ws: WebSocket,
    result: GatewayResult,
) -> None:
    for msg in result.outbound_json:
        await ws.send_text(json.dumps(msg, ensure_ascii=False))
