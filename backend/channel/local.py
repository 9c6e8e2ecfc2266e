"""
In-memory link between the coordinator and an in-process restricted context.

Both sides share one event loop. Requests are handed straight to the
attached handler; events emitted by the context go to channel subscribers.
Nothing is buffered: sending while no context is attached fails the same
way a message to a missing browser page would.
"""

from __future__ import annotations

from channel.base import DeliveryError, MessageChannel, RequestHandler
from constants import ERROR_CONTEXT_ABSENT
from protocol.messages import Message, Response


class LocalLink(MessageChannel):
    """Duplex in-memory channel. Also serves as the context's endpoint."""

    def __init__(self) -> None:
        super().__init__()
        self._handler: RequestHandler | None = None

    @property
    def attached(self) -> bool:
        return self._handler is not None

    def attach(self, handler: RequestHandler) -> None:
        self._handler = handler

    def detach(self) -> None:
        self._handler = None

    async def send(self, message: Message) -> Response:
        handler = self._handler
        if handler is None:
            raise DeliveryError(ERROR_CONTEXT_ABSENT)
        return await handler(message)

    async def emit(self, message: Message) -> None:
        await self._publish(message)
