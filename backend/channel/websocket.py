"""
WebSocket transport for a restricted context running in its own process.

Two halves:

WebSocketChannel (coordinator side):
- Serves the /ws/context endpoint, one link at a time
- Correlates request frames to response frames by id
- On disconnect, fails every outstanding round trip with DeliveryError
  and publishes a synthesized CONTEXT_LOST event

WebSocketContextClient (restricted side):
- Dials the coordinator, announces readiness once connected
- Serves each request in its own task, so STOP can be answered while
  INITIALIZE is still waiting on a permission prompt
- Emits engine events as event frames
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Awaitable, Callable

from fastapi import WebSocket, WebSocketDisconnect
from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed

from channel.base import DeliveryError, MessageChannel, RequestHandler
from constants import CONTEXT_LINK_REFUSED_CLOSE_CODE, ERROR_CONTEXT_ABSENT
from observability.logger import log_event
from protocol.messages import (
    EventFrame,
    Message,
    MessageType,
    ProtocolError,
    RequestFrame,
    Response,
    ResponseFrame,
    decode_frame,
    encode_event,
    encode_request,
    encode_response,
)


# ---------------------------------------------------------------------
# Coordinator side
# ---------------------------------------------------------------------

class WebSocketChannel(MessageChannel):
    """MessageChannel backed by the context process's WebSocket link."""

    def __init__(self) -> None:
        super().__init__()
        self._ws: WebSocket | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Response]] = {}

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def send(self, message: Message) -> Response:
        ws = self._ws
        if ws is None:
            raise DeliveryError(ERROR_CONTEXT_ABSENT)

        frame_id = next(self._ids)
        future: asyncio.Future[Response] = asyncio.get_running_loop().create_future()
        self._pending[frame_id] = future

        try:
            await ws.send_text(encode_request(frame_id, message))
        except (WebSocketDisconnect, RuntimeError) as e:
            self._pending.pop(frame_id, None)
            raise DeliveryError(ERROR_CONTEXT_ABSENT) from e

        try:
            return await future
        finally:
            self._pending.pop(frame_id, None)

    async def serve(self, ws: WebSocket) -> None:
        """
        Run the receive loop for one context link until it closes.

        A second concurrent link is refused with close code 1008.
        """
        await ws.accept()

        if self._ws is not None:
            log_event({
                "event_type": "CONTEXT_LINK_REFUSED",
                "reason": "already_connected",
            })
            await ws.close(code=CONTEXT_LINK_REFUSED_CLOSE_CODE)
            return

        self._ws = ws
        log_event({"event_type": "CONTEXT_LINK_UP"})

        reason = "context_disconnect"
        try:
            while True:
                raw = await ws.receive_text()
                await self._on_frame(raw)

        except WebSocketDisconnect:
            pass

        except Exception as exc:  # pylint: disable=broad-exception-caught
            reason = "link_error"
            log_event({
                "event_type": "CONTEXT_LINK_ERROR",
                "exception": type(exc).__name__,
                "message": str(exc),
            })

        finally:
            await self._on_link_closed(reason)

    async def _on_frame(self, raw: str) -> None:
        try:
            frame = decode_frame(raw)
        except ProtocolError as e:
            log_event({
                "event_type": "CONTEXT_FRAME_DROPPED",
                "error": str(e),
                "payload_preview": raw[:100],
            })
            return

        if isinstance(frame, ResponseFrame):
            future = self._pending.get(frame.reply_to)
            if future is None or future.done():
                log_event({
                    "event_type": "CONTEXT_RESPONSE_UNMATCHED",
                    "reply_to": frame.reply_to,
                })
                return
            future.set_result(frame.response)

        elif isinstance(frame, EventFrame):
            await self._publish(frame.message)

        else:
            log_event({
                "event_type": "CONTEXT_REQUEST_IGNORED",
                "message_type": frame.message.type.value,
            })

    async def _on_link_closed(self, reason: str) -> None:
        self._ws = None

        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(DeliveryError(ERROR_CONTEXT_ABSENT))

        log_event({
            "event_type": "CONTEXT_LINK_DOWN",
            "reason": reason,
            "failed_round_trips": len(pending),
        })

        await self._publish(Message(MessageType.CONTEXT_LOST, {"reason": reason}))


# ---------------------------------------------------------------------
# Restricted side
# ---------------------------------------------------------------------

class WebSocketContextClient:
    """Restricted-context end of the link. Implements ContextEndpoint."""

    def __init__(self, url: str) -> None:
        self._url = url
        self._ws: ClientConnection | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    async def emit(self, message: Message) -> None:
        ws = self._ws
        if ws is None:
            raise DeliveryError(ERROR_CONTEXT_ABSENT)
        try:
            await ws.send(encode_event(message))
        except ConnectionClosed as e:
            raise DeliveryError(ERROR_CONTEXT_ABSENT) from e

    async def run(
        self,
        handler: RequestHandler,
        *,
        on_connected: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        """Connect, serve requests until the coordinator goes away."""
        async with ws_connect(self._url) as ws:
            self._ws = ws
            log_event({"event_type": "CONTEXT_CONNECTED", "url": self._url})

            try:
                if on_connected is not None:
                    await on_connected()

                async for raw in ws:
                    self._on_frame(raw, handler)

            except ConnectionClosed:
                pass

            finally:
                self._ws = None
                for task in list(self._tasks):
                    task.cancel()
                if self._tasks:
                    await asyncio.gather(*self._tasks, return_exceptions=True)
                log_event({"event_type": "CONTEXT_DISCONNECTED", "url": self._url})

    def _on_frame(self, raw: str | bytes, handler: RequestHandler) -> None:
        try:
            frame = decode_frame(raw)
        except ProtocolError as e:
            log_event({"event_type": "COORDINATOR_FRAME_DROPPED", "error": str(e)})
            return

        if not isinstance(frame, RequestFrame):
            log_event({"event_type": "COORDINATOR_FRAME_IGNORED", "kind": type(frame).__name__})
            return

        task = asyncio.create_task(self._serve(frame, handler))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _serve(self, frame: RequestFrame, handler: RequestHandler) -> None:
        try:
            response = await handler(frame.message)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "CONTEXT_REQUEST_FAILED",
                "message_type": frame.message.type.value,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            response = Response.failed(str(exc))

        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(encode_response(frame.request_id, response))
        except ConnectionClosed:
            log_event({
                "event_type": "CONTEXT_RESPONSE_UNDELIVERED",
                "reply_to": frame.request_id,
            })
