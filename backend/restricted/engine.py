"""
Recognition engine capability.

The engine is supplied by the host; the restricted runtime only drives it.
Engine events are delivered through an observer subscription so that
several consumers can listen without overwriting each other.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Union

from observability.logger import log_event


@dataclass(frozen=True)
class EngineOptions:
    language: str
    continuous: bool
    interim_results: bool
    max_alternatives: int


# ---------------------------------------------------------------------
# Engine events
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class RecognitionResult:
    """One result batch. final_transcript may be empty (interim only)."""
    final_transcript: str
    interim_transcript: str
    confidence: float


@dataclass(frozen=True)
class RecognitionFailure:
    code: str
    message: str = ""


@dataclass(frozen=True)
class RecognitionEnd:
    """Engine stopped: explicit stop, error, or external interruption."""


EngineEvent = Union[RecognitionResult, RecognitionFailure, RecognitionEnd]
EngineListener = Callable[[EngineEvent], None]


class RecognitionEngine(ABC):
    """
    Continuous speech recognizer.

    Implementations call _publish() from their own callbacks. start() and
    stop() return once the request was accepted; the RecognitionEnd event
    is the only signal that the engine has actually stopped.
    """

    def __init__(self, options: EngineOptions) -> None:
        self.options = options
        self._listeners: list[EngineListener] = []

    @property
    def language(self) -> str:
        return self.options.language

    def set_language(self, language: str) -> None:
        """Takes effect on the next start()."""
        self.options = EngineOptions(
            language=language,
            continuous=self.options.continuous,
            interim_results=self.options.interim_results,
            max_alternatives=self.options.max_alternatives,
        )

    def subscribe(self, listener: EngineListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _publish(self, event: EngineEvent) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(event)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "ENGINE_LISTENER_ERROR",
                    "engine_event": type(event).__name__,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    async def release(self) -> None:
        """Free host resources. Default: nothing to free."""


# Builds an engine for the given options; raises EngineUnsupportedError
# when the host has no recognition capability.
EngineFactory = Callable[[EngineOptions], RecognitionEngine]
