"""Exceptions raised by restricted-context operations."""

from __future__ import annotations

from constants import (
    ERROR_ENGINE_UNSUPPORTED,
    ERROR_MICROPHONE_DENIED,
    ERROR_NOT_INITIALIZED,
)


class ContextError(Exception):
    """
    Base class for failures reported back to the coordinator.

    `code` is a stable machine-readable tag carried in Response.code.
    """

    code: str = "context_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message())

    @classmethod
    def default_message(cls) -> str:
        return "Recognition context error"


class PermissionDeniedError(ContextError):
    code = "permission_denied"

    @classmethod
    def default_message(cls) -> str:
        return ERROR_MICROPHONE_DENIED


class EngineUnsupportedError(ContextError):
    code = "engine_unsupported"

    @classmethod
    def default_message(cls) -> str:
        return ERROR_ENGINE_UNSUPPORTED


class NotInitializedError(ContextError):
    code = "not_initialized"

    @classmethod
    def default_message(cls) -> str:
        return ERROR_NOT_INITIALIZED
