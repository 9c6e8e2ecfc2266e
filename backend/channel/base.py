"""
Message channel contract.

Responsibilities:
- Carry request/response round trips across the context boundary
- Deliver unsolicited events to subscribers, routed by message type
- Report delivery failure (receiver absent) distinctly from an
  application-level error response

Non-responsibilities:
- No buffering, no reordering guarantees
- No session state
- No retry
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Protocol

from observability.logger import log_event
from protocol.messages import Message, Response


EventHandler = Callable[[Message], Awaitable[None]]
RequestHandler = Callable[[Message], Awaitable[Response]]
Unsubscribe = Callable[[], None]


class DeliveryError(Exception):
    """
    Raised when a message cannot reach the receiving context.

    Distinct from Response(success=False): the receiver never saw it.
    """


class MessageChannel(ABC):
    """
    Coordinator-side view of the link to the restricted context.

    send() resolves with the receiver's Response or raises DeliveryError.
    Events arriving from the other side fan out to every subscriber.
    """

    def __init__(self) -> None:
        self._subscribers: list[EventHandler] = []

    @abstractmethod
    async def send(self, message: Message) -> Response:
        """Deliver a request and wait for its response."""

    def subscribe(self, handler: EventHandler) -> Unsubscribe:
        self._subscribers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

        return _unsubscribe

    async def _publish(self, message: Message) -> None:
        for handler in tuple(self._subscribers):
            try:
                await handler(message)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "CHANNEL_SUBSCRIBER_ERROR",
                    "message_type": message.type.value,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })


class ContextEndpoint(Protocol):
    """Restricted-side view of the link: emits events to the coordinator."""

    async def emit(self, message: Message) -> None:
        ...
