# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import json
from typing import Any

import pytest

import session.gateway as gateway_mod
from fakes import build_system
from protocol.messages import Message, MessageType
from session.connection_status import ConnectionStatus
from session.gateway import ControlGateway


def start_frame(request_id: int = 1, language: str = "ja-JP") -> str:
    return json.dumps({
        "kind": "request",
        "id": request_id,
        "type": "REQUEST_START_RECOGNITION",
        "payload": {"language": language},
    })


def test_connect_announces_session_and_state():
    async def scenario():
        system = build_system()
        gw = ControlGateway(coordinator=system.coordinator)

        result = await gw.on_ws_connect()

        assert gw.session is not None
        assert gw.session.connection_status is ConnectionStatus.UP
        init = result.outbound_json[0]
        assert init["type"] == "SESSION_INIT"
        assert init["session_id"] == gw.session.session_id
        assert init["state"] == "IDLE"
        assert init["language"] == "ja-JP"

    asyncio.run(scenario())


def test_start_request_queues_started_event_then_response():
    async def scenario():
        system = build_system()
        gw = ControlGateway(coordinator=system.coordinator)
        await gw.on_ws_connect()
        assert gw.session is not None

        await gw.on_json_message(start_frame())
        frames = gw.session.drain_control()

        assert frames[0] == {
            "kind": "event",
            "type": "RECOGNITION_STARTED",
            "payload": {"language": "ja-JP"},
        }
        assert frames[1] == {
            "kind": "response",
            "reply_to": 1,
            "success": True,
            "error": None,
            "code": None,
        }

        await system.coordinator.shutdown()

    asyncio.run(scenario())


def test_malformed_frame_is_logged_and_dropped(monkeypatch: pytest.MonkeyPatch) -> None:
    emitted: list[dict[str, Any]] = []

    def fake_log_event(payload: dict[str, Any]) -> None:
        emitted.append(payload)

    monkeypatch.setattr(gateway_mod, "log_event", fake_log_event)

    async def scenario():
        system = build_system()
        gw = ControlGateway(coordinator=system.coordinator)
        await gw.on_ws_connect()
        assert gw.session is not None

        await gw.on_json_message("{not json")
        await gw.on_json_message(json.dumps({"kind": "event", "type": "RECOGNITION_ENDED"}))

        assert gw.session.drain_control() == ()

    asyncio.run(scenario())

    kinds = [e["event_type"] for e in emitted]
    assert "CONTROL_FRAME_DROPPED" in kinds
    assert "CONTROL_FRAME_IGNORED" in kinds


def test_disconnect_stops_forwarding_but_keeps_recognition_running():
    async def scenario():
        system = build_system()
        gw = ControlGateway(coordinator=system.coordinator)
        await gw.on_ws_connect()
        session = gw.session
        assert session is not None

        await gw.on_json_message(start_frame())
        await gw.on_ws_disconnect(reason="client_disconnect")

        assert session.connection_status is ConnectionStatus.DOWN
        assert system.coordinator.state.state.value == "ACTIVE"

        system.factory.last.result("まだ聞いています")
        await system.restricted.wait_idle()
        assert session.drain_control() == ()
        assert system.control.types()[-1] is MessageType.RECOGNITION_RESULT

        await system.coordinator.shutdown()

    asyncio.run(scenario())


def test_coordinator_events_are_framed_for_the_client():
    async def scenario():
        system = build_system()
        gw = ControlGateway(coordinator=system.coordinator)
        await gw.on_ws_connect()
        assert gw.session is not None

        await gw._on_coordinator_event(  # pylint: disable=protected-access
            Message(MessageType.RECOGNITION_ERROR, {"message": "x", "code": "network"})
        )

        assert gw.session.drain_control() == ({
            "kind": "event",
            "type": "RECOGNITION_ERROR",
            "payload": {"message": "x", "code": "network"},
        },)

    asyncio.run(scenario())
