# pylint: disable=missing-module-docstring,missing-function-docstring
import asyncio
import json

import pytest
from fastapi import WebSocketDisconnect

from channel.base import DeliveryError
from channel.local import LocalLink
from channel.websocket import WebSocketChannel
from fakes import settle
from protocol.messages import Message, MessageType, Response, encode_event, encode_response


class FakeServerSocket:
    """Stand-in for the FastAPI WebSocket of a context link."""

    def __init__(self) -> None:
        self.accepted = False
        self.close_code: int | None = None
        self.sent: list[dict] = []
        self._inbound: asyncio.Queue[str | None] = asyncio.Queue()

    async def accept(self) -> None:
        self.accepted = True

    async def close(self, code: int = 1000) -> None:
        self.close_code = code

    async def send_text(self, text: str) -> None:
        self.sent.append(json.loads(text))

    async def receive_text(self) -> str:
        raw = await self._inbound.get()
        if raw is None:
            raise WebSocketDisconnect(code=1000)
        return raw

    def push(self, raw: str) -> None:
        self._inbound.put_nowait(raw)

    def disconnect(self) -> None:
        self._inbound.put_nowait(None)


# ---------------------------------------------------------------------
# LocalLink
# ---------------------------------------------------------------------

def test_local_link_without_context_fails_delivery():
    async def scenario():
        link = LocalLink()

        with pytest.raises(DeliveryError):
            await link.send(Message(MessageType.STOP_RECOGNITION))

    asyncio.run(scenario())


def test_local_link_routes_requests_and_events():
    async def scenario():
        link = LocalLink()
        requests: list[Message] = []
        events: list[Message] = []

        async def handler(message: Message) -> Response:
            requests.append(message)
            return Response.ok()

        async def subscriber(message: Message) -> None:
            events.append(message)

        link.attach(handler)
        unsubscribe = link.subscribe(subscriber)

        assert (await link.send(Message(MessageType.STOP_RECOGNITION))).success
        await link.emit(Message(MessageType.RECOGNITION_ENDED))
        unsubscribe()
        await link.emit(Message(MessageType.RECOGNITION_ENDED))

        assert [m.type for m in requests] == [MessageType.STOP_RECOGNITION]
        assert events == [Message(MessageType.RECOGNITION_ENDED)]

    asyncio.run(scenario())


def test_failing_subscriber_does_not_block_others():
    async def scenario():
        link = LocalLink()
        events: list[Message] = []

        async def broken(_: Message) -> None:
            raise RuntimeError("listener bug")

        async def healthy(message: Message) -> None:
            events.append(message)

        link.subscribe(broken)
        link.subscribe(healthy)
        await link.emit(Message(MessageType.CONTEXT_READY))

        assert events == [Message(MessageType.CONTEXT_READY)]

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# WebSocketChannel
# ---------------------------------------------------------------------

def test_send_without_link_fails_delivery():
    async def scenario():
        channel = WebSocketChannel()

        with pytest.raises(DeliveryError):
            await channel.send(Message(MessageType.START_RECOGNITION))

    asyncio.run(scenario())


def test_round_trip_is_correlated_by_frame_id():
    async def scenario():
        channel = WebSocketChannel()
        ws = FakeServerSocket()
        serving = asyncio.create_task(channel.serve(ws))
        await settle()
        assert channel.connected

        first = asyncio.create_task(channel.send(Message(MessageType.INITIALIZE_RECOGNITION, {"language": "ja-JP"})))
        second = asyncio.create_task(channel.send(Message(MessageType.STOP_RECOGNITION)))
        await settle()

        ids = [frame["id"] for frame in ws.sent]
        ws.push(encode_response(ids[1], Response.ok()))
        ws.push(encode_response(ids[0], Response.failed("Microphone access denied", code="permission_denied")))

        assert (await second).success is True
        assert (await first).code == "permission_denied"

        ws.disconnect()
        await serving

    asyncio.run(scenario())


def test_events_reach_subscribers():
    async def scenario():
        channel = WebSocketChannel()
        events: list[Message] = []

        async def subscriber(message: Message) -> None:
            events.append(message)

        channel.subscribe(subscriber)
        ws = FakeServerSocket()
        serving = asyncio.create_task(channel.serve(ws))

        ws.push(encode_event(Message(MessageType.CONTEXT_READY)))
        ws.push("garbage")
        ws.push(encode_event(Message(MessageType.RECOGNITION_RESULT, {"finalTranscript": "こんにちは"})))
        ws.disconnect()
        await serving

        assert [m.type for m in events] == [
            MessageType.CONTEXT_READY,
            MessageType.RECOGNITION_RESULT,
            MessageType.CONTEXT_LOST,
        ]
        assert events[-1].payload == {"reason": "context_disconnect"}

    asyncio.run(scenario())


def test_disconnect_fails_outstanding_round_trips():
    async def scenario():
        channel = WebSocketChannel()
        ws = FakeServerSocket()
        serving = asyncio.create_task(channel.serve(ws))
        await settle()

        in_flight = asyncio.create_task(channel.send(Message(MessageType.START_RECOGNITION)))
        await settle()
        ws.disconnect()
        await serving

        with pytest.raises(DeliveryError):
            await in_flight
        assert channel.connected is False

    asyncio.run(scenario())


def test_second_link_is_refused():
    async def scenario():
        channel = WebSocketChannel()
        first = FakeServerSocket()
        serving = asyncio.create_task(channel.serve(first))
        await settle()

        second = FakeServerSocket()
        await channel.serve(second)

        assert second.accepted is True
        assert second.close_code == 1008
        assert channel.connected is True

        first.disconnect()
        await serving

    asyncio.run(scenario())
