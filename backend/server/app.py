"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Build the process-wide coordinator and its context link
- Register routes
- Shut the coordinator down with the app
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from channel.websocket import WebSocketChannel
from config import AppConfig
from hosts.subprocess import SubprocessContextHost
from observability.logger import log_event
from orchestrator.context_lifecycle import ContextLifecycleManager
from orchestrator.runtime import CoordinatorRuntime
from orchestrator.state_dataclass import CoordinatorState

from server.routes import register_routes


def build_coordinator(config: AppConfig, channel: WebSocketChannel) -> CoordinatorRuntime:
    """Coordinator whose restricted context runs as a worker process."""
    host = SubprocessContextHost(config, channel)
    return CoordinatorRuntime(
        channel=channel,
        lifecycle=ContextLifecycleManager(host),
        ready_timeout_ms=config.context_ready_timeout_ms,
        initial_state=CoordinatorState(language=config.default_language),
    )


def create_app(
    config: AppConfig | None = None,
    *,
    coordinator: CoordinatorRuntime | None = None,
    context_channel: WebSocketChannel | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Passing a coordinator replaces the worker-process wiring (tests,
    embedding). context_channel is then only needed if /ws/context
    should accept links.
    """
    config = config or AppConfig.load_from_env()

    if coordinator is None:
        context_channel = context_channel or WebSocketChannel()
        coordinator = build_coordinator(config, context_channel)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        log_event({
            "event_type": "APP_STARTED",
            "env": config.env,
            "recognition_engine": config.recognition_engine,
        })
        if config.recognition_engine is None:
            # Contexts will start, but every INITIALIZE fails with engine_unsupported.
            log_event({"event_type": "RECOGNITION_ENGINE_NOT_CONFIGURED"})
        try:
            yield
        finally:
            await coordinator.shutdown()
            log_event({"event_type": "APP_STOPPED"})

    app = FastAPI(title="Recognition Session Coordinator", lifespan=lifespan)

    app.state.config = config
    app.state.coordinator = coordinator
    app.state.context_channel = context_channel

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    register_routes(app)

    return app
