# backend/protocol/messages.py
"""
Message vocabulary and JSON framing for cross-context transport.

Every logical message is a tagged structure with a `type` discriminant.
On a WebSocket link each message travels inside a frame:

    request:  {"kind": "request",  "id": 7, "type": "START_RECOGNITION",
               "payload": {"language": "ja-JP"}}
    response: {"kind": "response", "reply_to": 7, "success": true,
               "error": null, "code": null}
    event:    {"kind": "event", "type": "RECOGNITION_RESULT",
               "payload": {"finalTranscript": "...", ...}}

Usage example:

    raw = encode_request(7, Message(MessageType.STOP_RECOGNITION))
    frame = decode_frame(raw)
    if isinstance(frame, RequestFrame):
        response = await handler(frame.message)
        await ws.send(encode_response(frame.request_id, response))
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


# -------------------------
# Discriminants
# -------------------------

class MessageType(str, Enum):
    """
    Canonical message types.

    Request/response vs fire-and-forget is fixed per type; see
    REQUEST_TYPES and EVENT_TYPES.
    """

    # control surface -> coordinator (request/response)
    REQUEST_START_RECOGNITION = "REQUEST_START_RECOGNITION"
    REQUEST_STOP_RECOGNITION = "REQUEST_STOP_RECOGNITION"
    REQUEST_SET_LANGUAGE = "REQUEST_SET_LANGUAGE"

    # coordinator -> restricted context (request/response)
    INITIALIZE_RECOGNITION = "INITIALIZE_RECOGNITION"
    START_RECOGNITION = "START_RECOGNITION"
    STOP_RECOGNITION = "STOP_RECOGNITION"
    SET_LANGUAGE = "SET_LANGUAGE"
    DESTROY_RECOGNITION = "DESTROY_RECOGNITION"

    # restricted context -> coordinator (events)
    CONTEXT_READY = "CONTEXT_READY"
    RECOGNITION_RESULT = "RECOGNITION_RESULT"
    RECOGNITION_ERROR = "RECOGNITION_ERROR"
    RECOGNITION_ENDED = "RECOGNITION_ENDED"

    # synthesized by the transport when the context link drops
    CONTEXT_LOST = "CONTEXT_LOST"

    # coordinator -> control surface (events)
    RECOGNITION_STARTED = "RECOGNITION_STARTED"
    RECOGNITION_INIT_FAILED = "RECOGNITION_INIT_FAILED"


REQUEST_TYPES: frozenset[MessageType] = frozenset({
    MessageType.REQUEST_START_RECOGNITION,
    MessageType.REQUEST_STOP_RECOGNITION,
    MessageType.REQUEST_SET_LANGUAGE,
    MessageType.INITIALIZE_RECOGNITION,
    MessageType.START_RECOGNITION,
    MessageType.STOP_RECOGNITION,
    MessageType.SET_LANGUAGE,
    MessageType.DESTROY_RECOGNITION,
})

EVENT_TYPES: frozenset[MessageType] = frozenset(MessageType) - REQUEST_TYPES


# -------------------------
# Exceptions
# -------------------------

class ProtocolError(Exception):
    """Base class for framing / vocabulary errors."""


class MalformedFrame(ProtocolError):
    """
    Raised when a frame is not valid JSON or lacks required fields.

    The frame is unsafe to process and must be dropped.
    """


class UnknownMessageType(ProtocolError):
    """Raised when a frame carries a type outside the vocabulary."""


# -------------------------
# Values
# -------------------------

@dataclass(frozen=True)
class Message:
    """A single tagged message. Payload shape depends on `type`."""
    type: MessageType
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_request(self) -> bool:
        return self.type in REQUEST_TYPES


@dataclass(frozen=True)
class Response:
    """
    Application-level answer to a request.

    success=False with code="delivery_failed" is reserved for transport
    failures reported by the coordinator itself; everything else comes
    from the receiving side.
    """
    success: bool
    error: str | None = None
    code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            out["error"] = self.error
        if self.code is not None:
            out["code"] = self.code
        return out

    @staticmethod
    def ok() -> Response:
        return Response(success=True)

    @staticmethod
    def failed(error: str, *, code: str | None = None) -> Response:
        return Response(success=False, error=error, code=code)


@dataclass(frozen=True)
class RequestFrame:
    request_id: int
    message: Message


@dataclass(frozen=True)
class ResponseFrame:
    reply_to: int
    response: Response


@dataclass(frozen=True)
class EventFrame:
    message: Message


Frame = Union[RequestFrame, ResponseFrame, EventFrame]


# -------------------------
# Encoding
# -------------------------

def _dumps(obj: dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def response_frame(reply_to: int, response: Response) -> dict[str, Any]:
    return {
        "kind": "response",
        "reply_to": reply_to,
        "success": response.success,
        "error": response.error,
        "code": response.code,
    }


def event_frame(message: Message) -> dict[str, Any]:
    if message.is_request:
        raise ProtocolError(f"{message.type.value} is not an event type")
    return {
        "kind": "event",
        "type": message.type.value,
        "payload": message.payload,
    }


def encode_request(request_id: int, message: Message) -> str:
    if not message.is_request:
        raise ProtocolError(f"{message.type.value} is not a request type")
    return _dumps({
        "kind": "request",
        "id": request_id,
        "type": message.type.value,
        "payload": message.payload,
    })


def encode_response(reply_to: int, response: Response) -> str:
    return _dumps(response_frame(reply_to, response))


def encode_event(message: Message) -> str:
    return _dumps(event_frame(message))


# -------------------------
# Decoding
# -------------------------

def parse_message_type(value: Any) -> MessageType:
    try:
        return MessageType(value)
    except ValueError as e:
        raise UnknownMessageType(f"Unknown message type: {value!r}") from e


def _payload(data: dict[str, Any]) -> dict[str, Any]:
    payload = data.get("payload", {})
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise MalformedFrame(f"payload must be an object, got {type(payload).__name__}")
    return payload


def decode_frame(raw: str | bytes) -> Frame:
    """
    Decode one JSON frame.

    Raises:
        MalformedFrame: not JSON, not an object, or missing fields
        UnknownMessageType: type outside the vocabulary
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedFrame(f"Invalid JSON frame: {e}") from e

    if not isinstance(data, dict):
        raise MalformedFrame("Frame must be a JSON object")

    kind = data.get("kind")

    if kind == "response":
        reply_to = data.get("reply_to")
        if not isinstance(reply_to, int):
            raise MalformedFrame("Response frame missing integer reply_to")
        return ResponseFrame(
            reply_to=reply_to,
            response=Response(
                success=bool(data.get("success", False)),
                error=data.get("error"),
                code=data.get("code"),
            ),
        )

    if kind == "request":
        request_id = data.get("id")
        if not isinstance(request_id, int):
            raise MalformedFrame("Request frame missing integer id")
        message = Message(type=parse_message_type(data.get("type")), payload=_payload(data))
        if not message.is_request:
            raise MalformedFrame(f"{message.type.value} cannot be sent as a request")
        return RequestFrame(request_id=request_id, message=message)

    if kind == "event":
        message = Message(type=parse_message_type(data.get("type")), payload=_payload(data))
        if message.is_request:
            raise MalformedFrame(f"{message.type.value} cannot be sent as an event")
        return EventFrame(message=message)

    raise MalformedFrame(f"Unknown frame kind: {kind!r}")
