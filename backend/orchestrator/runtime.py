"""
Runtime execution shell for the recognition session coordinator.

Responsibilities:
- Own coordinator state
- Call the pure reducer
- Execute commands with side effects (context creation, round trips,
  caller resolution, control-surface notifications)
- Route unsolicited restricted-context events into reducer events
- Run the pending start queue and its readiness deadline

Non-responsibilities:
- Any state machine decision (reducer only)
- Transport details (MessageChannel)
- Context hosting (ContextHost via ContextLifecycleManager)
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from channel.base import DeliveryError, MessageChannel, Unsubscribe
from constants import (
    CONTEXT_PROCESS_EXIT_TIMEOUT_S,
    CONTEXT_READY_TIMEOUT_MS,
    ERROR_CONTEXT_NOT_READY,
    ERROR_SHUTDOWN,
)
from observability.logger import log_event
from observability.metrics import timed
from orchestrator.commands import (
    Command,
    EnsureContext,
    LogEvent,
    NotifyControl,
    ResolveRequest,
    SendDestroy,
    SendInitialize,
    SendSetLanguage,
    SendStart,
    SendStop,
)
from orchestrator.context_lifecycle import (
    ContextCreationError,
    ContextHandle,
    ContextLifecycleManager,
)
from orchestrator.events import (
    Completion,
    ContextCreationFailed,
    ContextLost,
    ContextReadyTimeout,
    EngineEnded,
    EngineError,
    EngineResult,
    Event,
    EventType,
    InitializeCompleted,
    SessionTeardown,
    SetLanguageCompleted,
    SetLanguageRequested,
    StartCompleted,
    StartRequested,
    StartTaskDispatched,
    StopCompleted,
    StopRequested,
)
from orchestrator.pending import PendingTask, PendingTaskQueue
from orchestrator.reducer import reduce
from orchestrator.request_ids import RequestIds
from orchestrator.state_dataclass import CoordinatorState
from protocol.messages import Message, MessageType, Response


ControlListener = Callable[[Message], Awaitable[None]]


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class CoordinatorRuntime:
    """
    Runtime execution boundary for the single recognition session.

    Guarantees:
    - Reducer is called exactly once per incoming event
    - State is swapped in before any side effect runs
    - Commands execute in reducer-emitted order
    - Round trips run as tracked background tasks; their outcome
      re-enters through handle_event (single entry point)
    """

    def __init__(
        self,
        *,
        channel: MessageChannel,
        lifecycle: ContextLifecycleManager,
        ready_timeout_ms: int = CONTEXT_READY_TIMEOUT_MS,
        initial_state: CoordinatorState | None = None,
    ) -> None:
        self._channel = channel
        self._lifecycle = lifecycle
        self._state = initial_state or CoordinatorState()
        self._ids = RequestIds()

        # request_id -> control-surface caller
        self._callers: dict[int, asyncio.Future[Response]] = {}
        self._listeners: list[ControlListener] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

        self._pending = PendingTaskQueue(
            timeout_ms=ready_timeout_ms,
            on_timeout=self._on_ready_timeout,
        )
        self._unsubscribe_channel = channel.subscribe(self._on_channel_event)

    # ------------------------------------------------------------------
    # Observability (read-only)
    # ------------------------------------------------------------------

    @property
    def state(self) -> CoordinatorState:
        """Current immutable session snapshot. Never mutate."""
        return self._state

    @property
    def context_handle(self) -> ContextHandle:
        return self._lifecycle.handle

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Control-surface API
    # ------------------------------------------------------------------

    async def request_start(self, language: str) -> Response:
        with timed("recognition_start_request", details={"language": language}) as details:
            response = await self._request(lambda request_id: StartRequested(
                event_type=EventType.START_REQUESTED,
                ts_ms=_now_ms(),
                request_id=request_id,
                language=language,
            ))
            details["success"] = response.success
            return response

    async def request_stop(self) -> Response:
        context_exists = await self._lifecycle.exists()
        if not context_exists:
            # Queued starts died with their context; the reducer fails their caller.
            self._pending.drop_all()
        return await self._request(lambda request_id: StopRequested(
            event_type=EventType.STOP_REQUESTED,
            ts_ms=_now_ms(),
            request_id=request_id,
            context_exists=context_exists,
        ))

    async def request_set_language(self, language: str) -> Response:
        context_exists = await self._lifecycle.exists()
        return await self._request(lambda request_id: SetLanguageRequested(
            event_type=EventType.SET_LANGUAGE_REQUESTED,
            ts_ms=_now_ms(),
            request_id=request_id,
            language=language,
            context_exists=context_exists,
        ))

    async def handle_control_request(self, message: Message) -> Response:
        """Serve one REQUEST_* message from the control surface."""
        language = message.payload.get("language") or self._state.language

        if message.type is MessageType.REQUEST_START_RECOGNITION:
            return await self.request_start(language)
        if message.type is MessageType.REQUEST_STOP_RECOGNITION:
            return await self.request_stop()
        if message.type is MessageType.REQUEST_SET_LANGUAGE:
            return await self.request_set_language(language)

        log_event({
            "event_type": "CONTROL_REQUEST_UNSUPPORTED",
            "message_type": message.type.value,
        })
        return Response.failed(f"Unsupported request: {message.type.value}", code="unsupported")

    def subscribe(self, listener: ControlListener) -> Unsubscribe:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Event pipeline
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> None:
        """
        Process a single event through the reducer.

        This is the only entry point for events affecting session state.
        """
        new_state, commands = reduce(self._state, event)
        self._state = new_state

        for cmd in commands:
            await self._execute_command(cmd)

    async def _request(self, make_event: Callable[[int], Event]) -> Response:
        if self._closed:
            return Response.failed(ERROR_SHUTDOWN, code="shutdown")

        request_id = self._ids.next()
        future: asyncio.Future[Response] = asyncio.get_running_loop().create_future()
        self._callers[request_id] = future

        await self.handle_event(make_event(request_id))
        return await future

    # ------------------------------------------------------------------
    # Command execution (side effects)
    # ------------------------------------------------------------------

    async def _execute_command(self, cmd: Command) -> None:
        if isinstance(cmd, LogEvent):
            log_event(cmd.event)

        elif isinstance(cmd, EnsureContext):
            await self._ensure_context(cmd)

        elif isinstance(cmd, SendInitialize):
            self._round_trip(
                Message(MessageType.INITIALIZE_RECOGNITION, {"language": cmd.language}),
                InitializeCompleted,
                EventType.INITIALIZE_COMPLETED,
                cmd.request_id,
            )

        elif isinstance(cmd, SendStart):
            self._round_trip(
                Message(MessageType.START_RECOGNITION, {"language": cmd.language}),
                StartCompleted,
                EventType.START_COMPLETED,
                cmd.request_id,
            )

        elif isinstance(cmd, SendStop):
            self._round_trip(
                Message(MessageType.STOP_RECOGNITION),
                StopCompleted,
                EventType.STOP_COMPLETED,
                cmd.request_id,
            )

        elif isinstance(cmd, SendSetLanguage):
            self._round_trip(
                Message(MessageType.SET_LANGUAGE, {"language": cmd.language}),
                SetLanguageCompleted,
                EventType.SET_LANGUAGE_COMPLETED,
                cmd.request_id,
            )

        elif isinstance(cmd, SendDestroy):
            await self._destroy_engine()

        elif isinstance(cmd, ResolveRequest):
            self._resolve(cmd)

        elif isinstance(cmd, NotifyControl):
            await self._notify(Message(cmd.message_type, dict(cmd.payload)))

    async def _ensure_context(self, cmd: EnsureContext) -> None:
        try:
            created = await self._lifecycle.ensure_exists()
        except ContextCreationError as e:
            await self.handle_event(ContextCreationFailed(
                event_type=EventType.CONTEXT_CREATION_FAILED,
                ts_ms=_now_ms(),
                request_id=cmd.request_id,
                error=str(e) or "Context creation failed",
            ))
            return

        task = PendingTask(
            language=cmd.language,
            request_id=cmd.request_id,
            enqueued_at_ms=_now_ms(),
        )

        if self._lifecycle.handle.ready:
            await self._run_start_task(task)
        else:
            log_event({
                "event_type": "CONTEXT_NOT_READY",
                "request_id": cmd.request_id,
                "created": created,
            })
            self._pending.enqueue(task)

    async def _run_start_task(self, task: PendingTask) -> None:
        """The one path a start task takes, direct or replayed."""
        await self.handle_event(StartTaskDispatched(
            event_type=EventType.START_TASK_DISPATCHED,
            ts_ms=_now_ms(),
            request_id=task.request_id,
            language=task.language,
        ))

    def _round_trip(
        self,
        message: Message,
        completion: type[Completion],
        event_type: EventType,
        request_id: int | None,
    ) -> None:
        async def _send() -> None:
            try:
                response = await self._channel.send(message)
            except DeliveryError as e:
                self._lifecycle.mark_absent()
                log_event({
                    "event_type": "DELIVERY_FAILED",
                    "message_type": message.type.value,
                    "request_id": request_id,
                    "error": str(e),
                })
                event = completion(
                    event_type=event_type,
                    ts_ms=_now_ms(),
                    request_id=request_id,
                    success=False,
                    error=str(e),
                    code="delivery_failed",
                    delivery_failed=True,
                )
            else:
                event = completion(
                    event_type=event_type,
                    ts_ms=_now_ms(),
                    request_id=request_id,
                    success=response.success,
                    error=response.error,
                    code=response.code,
                )
            await self.handle_event(event)

        self._spawn(_send())

    async def _destroy_engine(self) -> None:
        try:
            await asyncio.wait_for(
                self._channel.send(Message(MessageType.DESTROY_RECOGNITION)),
                timeout=CONTEXT_PROCESS_EXIT_TIMEOUT_S,
            )
        except (DeliveryError, asyncio.TimeoutError) as e:
            log_event({
                "event_type": "DESTROY_UNDELIVERED",
                "exception": type(e).__name__,
                "error": str(e),
            })

    def _resolve(self, cmd: ResolveRequest) -> None:
        future = self._callers.pop(cmd.request_id, None)
        if future is None or future.done():
            return
        future.set_result(Response(success=cmd.success, error=cmd.error, code=cmd.code))

    async def _notify(self, message: Message) -> None:
        for listener in tuple(self._listeners):
            try:
                await listener(message)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "CONTROL_LISTENER_ERROR",
                    "message_type": message.type.value,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Wait for every in-flight round trip (and what it triggers)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Restricted-context events
    # ------------------------------------------------------------------

    async def _on_channel_event(self, message: Message) -> None:
        payload = message.payload
        ts = _now_ms()

        if message.type is MessageType.CONTEXT_READY:
            self._lifecycle.mark_ready()
            log_event({"event_type": "CONTEXT_READY", "pending": len(self._pending)})
            await self._pending.drain(self._run_start_task)

        elif message.type is MessageType.RECOGNITION_RESULT:
            await self.handle_event(EngineResult(
                event_type=EventType.ENGINE_RESULT,
                ts_ms=ts,
                payload=dict(payload),
            ))

        elif message.type is MessageType.RECOGNITION_ERROR:
            await self.handle_event(EngineError(
                event_type=EventType.ENGINE_ERROR,
                ts_ms=ts,
                message=str(payload.get("message") or payload.get("code") or "Unknown error"),
                code=payload.get("code"),
            ))

        elif message.type is MessageType.RECOGNITION_ENDED:
            await self.handle_event(EngineEnded(event_type=EventType.ENGINE_ENDED, ts_ms=ts))

        elif message.type is MessageType.CONTEXT_LOST:
            self._lifecycle.mark_absent()
            self._pending.drop_all()
            await self.handle_event(ContextLost(
                event_type=EventType.CONTEXT_LOST,
                ts_ms=ts,
                reason=payload.get("reason"),
            ))

        else:
            log_event({
                "event_type": "CONTEXT_EVENT_IGNORED",
                "message_type": message.type.value,
            })

    async def _on_ready_timeout(self, dropped: tuple[PendingTask, ...]) -> None:
        for task in dropped:
            await self.handle_event(ContextReadyTimeout(
                event_type=EventType.CONTEXT_READY_TIMEOUT,
                ts_ms=_now_ms(),
                request_id=task.request_id,
                error=ERROR_CONTEXT_NOT_READY,
            ))
        # Unresponsive; the next start creates a fresh one.
        await self._lifecycle.close()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """
        Fail every waiting caller, release the engine, close the context.

        Idempotent.
        """
        if self._closed:
            return
        self._closed = True

        for task in self._pending.drop_all():
            self._resolve(ResolveRequest(
                request_id=task.request_id,
                success=False,
                error=ERROR_SHUTDOWN,
                code="shutdown",
            ))
        self._pending.close()

        await self.handle_event(SessionTeardown(
            event_type=EventType.SESSION_TEARDOWN,
            ts_ms=_now_ms(),
        ))

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        for request_id in list(self._callers):
            self._resolve(ResolveRequest(
                request_id=request_id,
                success=False,
                error=ERROR_SHUTDOWN,
                code="shutdown",
            ))

        self._unsubscribe_channel()
        await self._lifecycle.close()
