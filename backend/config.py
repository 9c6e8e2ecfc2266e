"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No orchestration logic
- No protocol constants
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from constants import (
    CONTEXT_READY_TIMEOUT_MS,
    DEFAULT_LANGUAGE,
    ENGINE_RETRY_BASE_DELAY_MS,
)


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the coordinator and context host.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str = "dev"
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Server
    # ------------------------------------------------------------------

    host: str = "127.0.0.1"
    port: int = 8000

    # ------------------------------------------------------------------
    # Recognition
    # ------------------------------------------------------------------

    default_language: str = DEFAULT_LANGUAGE

    # "module:attribute" of the engine factory loaded by the context
    # process. None means the host has no recognition capability.
    recognition_engine: str | None = None

    grant_microphone: bool = False

    # ------------------------------------------------------------------
    # Restricted context
    # ------------------------------------------------------------------

    # URL the context process dials back to; derived from host/port if unset.
    context_url: str | None = None
    context_ready_timeout_ms: int = CONTEXT_READY_TIMEOUT_MS
    engine_retry_base_delay_ms: int = ENGINE_RETRY_BASE_DELAY_MS

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool = True

    @property
    def resolved_context_url(self) -> str:
        """WebSocket URL of the coordinator's context link endpoint."""
        if self.context_url:
            return self.context_url
        return f"ws://{self.host}:{self.port}/ws/context"

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ValueError if a numeric variable is malformed.
        """
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            host=os.environ.get("HOST", "127.0.0.1"),
            port=int(os.environ.get("PORT", "8000")),

            default_language=os.environ.get("DEFAULT_LANGUAGE", DEFAULT_LANGUAGE),
            recognition_engine=os.environ.get("RECOGNITION_ENGINE") or None,
            grant_microphone=os.environ.get("GRANT_MICROPHONE", "0") == "1",

            context_url=os.environ.get("CONTEXT_URL") or None,
            context_ready_timeout_ms=int(
                os.environ.get("CONTEXT_READY_TIMEOUT_MS", str(CONTEXT_READY_TIMEOUT_MS))
            ),
            engine_retry_base_delay_ms=int(
                os.environ.get("ENGINE_RETRY_BASE_DELAY_MS", str(ENGINE_RETRY_BASE_DELAY_MS))
            ),

            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",
        )
