"""
Restricted context runtime.

Responsibilities:
- Own the recognition engine and the media permission
- Serve INITIALIZE / START / STOP / SET_LANGUAGE / DESTROY requests
- Translate engine callbacks into RESULT / ERROR / ENDED events
- Retry transient engine failures locally, without the coordinator

Invariants:
- ENDED is emitted exactly once per successful start
- Silent errors never reach the coordinator and never end the session
- Retryable errors are surfaced only after retries are exhausted
- Errors arriving after an explicit stop are logged and swallowed
- Events are emitted in the order the engine produced them
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from channel.base import ContextEndpoint, DeliveryError
from constants import (
    DEFAULT_LANGUAGE,
    ENGINE_CONTINUOUS,
    ENGINE_INTERIM_RESULTS,
    ENGINE_MAX_ALTERNATIVES,
    ENGINE_RETRY_BASE_DELAY_MS,
)
from observability.logger import log_event
from protocol.messages import Message, MessageType, Response
from restricted.engine import (
    EngineEvent,
    EngineFactory,
    EngineOptions,
    RecognitionEnd,
    RecognitionEngine,
    RecognitionFailure,
    RecognitionResult,
)
from restricted.errors import ContextError, NotInitializedError, PermissionDeniedError
from restricted.permission import MediaPermission, PermissionState
from restricted.retry import (
    ErrorClass,
    classify_error,
    get_retry_delay_ms,
    next_attempt,
    reset_attempt,
    should_retry,
)


class RestrictedContextRuntime:
    """One engine, one recognition session at a time."""

    def __init__(
        self,
        endpoint: ContextEndpoint,
        *,
        engine_factory: EngineFactory,
        permission: MediaPermission,
        retry_base_delay_ms: int = ENGINE_RETRY_BASE_DELAY_MS,
        language: str = DEFAULT_LANGUAGE,
    ) -> None:
        self._endpoint = endpoint
        self._engine_factory = engine_factory
        self._permission = permission
        self._retry_base_delay_ms = retry_base_delay_ms
        self._language = language

        self._engine: RecognitionEngine | None = None
        self._unsubscribe: Callable[[], None] | None = None

        # Engine accepted start() and has not reported its end yet.
        self._active = False
        # A successful start() whose ENDED has not been emitted yet.
        self._session_open = False
        self._stop_requested = False

        self._restart_reason: ErrorClass | None = None
        self._restart_delay_ms = 0
        self._restart_task: asyncio.Task[None] | None = None
        self._retry = reset_attempt()

        self._emit_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Observability (read-only)
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._engine is not None

    @property
    def active(self) -> bool:
        return self._session_open

    @property
    def language(self) -> str:
        return self._language

    # ------------------------------------------------------------------
    # Request dispatch
    # ------------------------------------------------------------------

    async def handle_request(self, message: Message) -> Response:
        """Serve one coordinator request. Never raises."""
        payload = message.payload
        language = payload.get("language") or self._language

        operations: dict[MessageType, Callable[[], Awaitable[None]]] = {
            MessageType.INITIALIZE_RECOGNITION: lambda: self.initialize(language),
            MessageType.START_RECOGNITION: lambda: self.start(language),
            MessageType.STOP_RECOGNITION: self.stop,
            MessageType.SET_LANGUAGE: lambda: self.set_language(language),
            MessageType.DESTROY_RECOGNITION: self.destroy,
        }

        operation = operations.get(message.type)
        if operation is None:
            self._log("REQUEST_UNSUPPORTED", {"message_type": message.type.value})
            return Response.failed(
                f"Unsupported request: {message.type.value}",
                code="unsupported",
            )

        try:
            await operation()
        except ContextError as e:
            self._log("REQUEST_FAILED", {
                "message_type": message.type.value,
                "code": e.code,
                "error": str(e),
            })
            return Response.failed(str(e), code=e.code)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self._log("REQUEST_FAILED", {
                "message_type": message.type.value,
                "code": "engine_error",
                "exception": type(exc).__name__,
                "error": str(exc),
            })
            return Response.failed(str(exc), code="engine_error")

        return Response.ok()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def announce_ready(self) -> None:
        await self._emit(Message(MessageType.CONTEXT_READY))

    async def initialize(self, language: str) -> None:
        """
        Acquire the microphone permission and build the engine.

        Raises:
            PermissionDeniedError: permission refused
            EngineUnsupportedError: host has no recognition capability
        """
        current = await self._permission.query()
        if current is PermissionState.DENIED:
            raise PermissionDeniedError()
        if current is not PermissionState.GRANTED:
            if not await self._permission.request():
                raise PermissionDeniedError()

        await self._release_engine()

        engine = self._engine_factory(EngineOptions(
            language=language,
            continuous=ENGINE_CONTINUOUS,
            interim_results=ENGINE_INTERIM_RESULTS,
            max_alternatives=ENGINE_MAX_ALTERNATIVES,
        ))
        self._engine = engine
        self._unsubscribe = engine.subscribe(self._on_engine_event)
        self._language = language
        self._retry = reset_attempt()

        self._log("ENGINE_INITIALIZED", {"language": language})

    async def start(self, language: str | None = None) -> None:
        engine = self._engine
        if engine is None:
            raise NotInitializedError()

        if self._session_open:
            self._log("START_IGNORED", {"reason": "already_active"})
            return

        if language and language != engine.language:
            engine.set_language(language)
            self._language = language

        self._stop_requested = False
        self._restart_reason = None
        self._retry = reset_attempt()

        # Flags go up first: a synchronous end inside start() must count.
        self._active = True
        self._session_open = True
        try:
            await engine.start()
        except Exception:
            self._active = False
            self._session_open = False
            raise

        self._log("ENGINE_STARTED", {"language": engine.language})

    async def stop(self) -> None:
        self._cancel_restart()

        if not self._session_open:
            self._log("STOP_IGNORED", {"reason": "not_active"})
            return

        self._stop_requested = True
        self._restart_reason = None

        engine = self._engine
        if self._active and engine is not None:
            await engine.stop()
        else:
            # Between an engine end and its scheduled restart.
            self._emit_ended()

    async def set_language(self, language: str) -> None:
        self._language = language
        if self._engine is not None:
            self._engine.set_language(language)
        self._log("LANGUAGE_SET", {"language": language})

    async def destroy(self) -> None:
        self._cancel_restart()
        if self._session_open:
            self._stop_requested = True
        await self._release_engine()
        self._log("ENGINE_DESTROYED")

    async def wait_idle(self) -> None:
        """Wait until every queued event has been handed to the endpoint."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Engine events
    # ------------------------------------------------------------------

    def _on_engine_event(self, event: EngineEvent) -> None:
        if isinstance(event, RecognitionResult):
            self._on_engine_result(event)
        elif isinstance(event, RecognitionFailure):
            self._on_engine_failure(event)
        elif isinstance(event, RecognitionEnd):
            self._on_engine_end()

    def _on_engine_result(self, event: RecognitionResult) -> None:
        # Speech after a silent error: the next end is a real end.
        if self._restart_reason is ErrorClass.SILENT:
            self._restart_reason = None
        self._retry = reset_attempt()
        self._emit_soon(Message(MessageType.RECOGNITION_RESULT, {
            "finalTranscript": event.final_transcript,
            "interimTranscript": event.interim_transcript,
            "confidence": event.confidence,
        }))

    def _on_engine_failure(self, event: RecognitionFailure) -> None:
        if self._stop_requested:
            self._log("ENGINE_ERROR", {"code": event.code, "decision": "ignored_after_stop"})
            return

        error_class = classify_error(event.code)

        if error_class is ErrorClass.SILENT:
            self._restart_reason = ErrorClass.SILENT
            self._restart_delay_ms = 0
            self._log("ENGINE_ERROR", {"code": event.code, "decision": "silent"})
            return

        if error_class is ErrorClass.RETRY and should_retry(self._retry):
            self._retry = next_attempt(self._retry)
            delay_ms = get_retry_delay_ms(self._retry, base_delay_ms=self._retry_base_delay_ms)
            self._restart_reason = ErrorClass.RETRY
            self._restart_delay_ms = delay_ms
            self._log("ENGINE_ERROR", {
                "code": event.code,
                "decision": "retry_scheduled",
                "attempt": self._retry.attempt,
                "delay_ms": delay_ms,
            })
            self._stop_engine_soon()
            return

        self._log("ENGINE_ERROR", {
            "code": event.code,
            "decision": "surfaced",
            "error_class": error_class.value,
            "attempt": self._retry.attempt,
        })
        self._restart_reason = None
        self._retry = reset_attempt()
        self._emit_soon(Message(MessageType.RECOGNITION_ERROR, {
            "code": event.code,
            "message": event.message or event.code,
        }))
        self._stop_engine_soon()

    def _on_engine_end(self) -> None:
        if not self._active:
            self._log("ENGINE_END_IGNORED", {"reason": "not_active"})
            return
        self._active = False

        if self._restart_reason is not None and self._session_open and not self._stop_requested:
            self._restart_reason = None
            self._schedule_restart(self._restart_delay_ms)
            return

        self._emit_ended()

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------

    def _schedule_restart(self, delay_ms: int) -> None:
        self._cancel_restart()
        self._restart_task = asyncio.create_task(self._restart(delay_ms))

    def _cancel_restart(self) -> None:
        task = self._restart_task
        self._restart_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _restart(self, delay_ms: int) -> None:
        try:
            await asyncio.sleep(delay_ms / 1000.0)
        except asyncio.CancelledError:
            return

        engine = self._engine
        if engine is None or self._stop_requested or not self._session_open:
            return

        self._active = True
        try:
            await engine.start()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self._active = False
            self._log("ENGINE_RESTART_FAILED", {
                "exception": type(exc).__name__,
                "error": str(exc),
            })
            self._emit_soon(Message(MessageType.RECOGNITION_ERROR, {
                "code": "restart-failed",
                "message": str(exc),
            }))
            self._emit_ended()
            return

        self._log("ENGINE_RESTARTED", {"delay_ms": delay_ms, "attempt": self._retry.attempt})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _stop_engine_soon(self) -> None:
        engine = self._engine
        if engine is None:
            return

        async def _stop() -> None:
            if self._active:
                await engine.stop()

        self._spawn(_stop())

    async def _release_engine(self) -> None:
        engine = self._engine
        if engine is None:
            return

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._engine = None

        was_active = self._active
        self._active = False
        if was_active:
            try:
                await engine.stop()
            except Exception as exc:  # pylint: disable=broad-exception-caught
                self._log("ENGINE_STOP_FAILED", {
                    "exception": type(exc).__name__,
                    "error": str(exc),
                })
        await engine.release()

        self._emit_ended()

    def _emit_ended(self) -> None:
        if not self._session_open:
            return
        self._session_open = False
        self._emit_soon(Message(MessageType.RECOGNITION_ENDED))

    def _emit_soon(self, message: Message) -> None:
        self._spawn(self._emit(message))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _emit(self, message: Message) -> None:
        # The lock is FIFO, so events leave in the order they were queued.
        async with self._emit_lock:
            try:
                await self._endpoint.emit(message)
            except DeliveryError as e:
                self._log("EVENT_UNDELIVERED", {
                    "message_type": message.type.value,
                    "error": str(e),
                })

    def _log(self, event_type: str, details: dict[str, Any] | None = None) -> None:
        log_event({
            "event_type": event_type,
            "context": "restricted",
            "active": self._session_open,
            "details": details or {},
        })
