# pylint: disable=missing-module-docstring,missing-function-docstring
import asyncio
from typing import Any

import pytest

import restricted.runtime as restricted_runtime
from fakes import FakeEngineFactory, RecordingEndpoint, settle, wait_until
from protocol.messages import Message, MessageType
from restricted.permission import MediaPermission, PermissionState, StaticPermission
from restricted.runtime import RestrictedContextRuntime


class DeniedPermission(MediaPermission):
    def __init__(self) -> None:
        self.prompts = 0

    async def query(self) -> PermissionState:
        return PermissionState.DENIED

    async def request(self) -> bool:
        self.prompts += 1
        return False


@pytest.fixture
def logs(monkeypatch) -> list[dict[str, Any]]:
    captured: list[dict[str, Any]] = []
    monkeypatch.setattr(restricted_runtime, "log_event", captured.append)
    return captured


def make_runtime(
    *,
    factory: FakeEngineFactory | None = None,
    permission: MediaPermission | None = None,
) -> tuple[RestrictedContextRuntime, RecordingEndpoint, FakeEngineFactory]:
    endpoint = RecordingEndpoint()
    factory = factory or FakeEngineFactory()
    runtime = RestrictedContextRuntime(
        endpoint,
        engine_factory=factory,
        permission=permission or StaticPermission(granted=True),
        retry_base_delay_ms=1,
    )
    return runtime, endpoint, factory


def request(message_type: MessageType, **payload: Any) -> Message:
    return Message(message_type, payload)


async def started(runtime: RestrictedContextRuntime, language: str = "ja-JP") -> None:
    assert (await runtime.handle_request(request(MessageType.INITIALIZE_RECOGNITION, language=language))).success
    assert (await runtime.handle_request(request(MessageType.START_RECOGNITION, language=language))).success


# ---------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------

def test_start_before_initialize_is_rejected():
    async def scenario():
        runtime, _, factory = make_runtime()

        response = await runtime.handle_request(request(MessageType.START_RECOGNITION, language="ja-JP"))

        assert response.success is False
        assert response.code == "not_initialized"
        assert factory.engines == []

    asyncio.run(scenario())


def test_initialize_does_not_reprompt_when_already_granted():
    async def scenario():
        permission = StaticPermission(granted=True)
        runtime, _, factory = make_runtime(permission=permission)

        response = await runtime.handle_request(request(MessageType.INITIALIZE_RECOGNITION, language="en-US"))

        assert response.success is True
        assert permission.prompts == 0
        assert factory.last.options.language == "en-US"
        assert factory.last.options.continuous is True
        assert factory.last.options.interim_results is True
        assert factory.last.options.max_alternatives == 1

    asyncio.run(scenario())


def test_initialize_prompts_once_and_reports_refusal():
    async def scenario():
        permission = StaticPermission(granted=False)
        runtime, _, _ = make_runtime(permission=permission)

        response = await runtime.handle_request(request(MessageType.INITIALIZE_RECOGNITION))

        assert response.success is False
        assert response.code == "permission_denied"
        assert response.error == "Microphone access denied"
        assert permission.prompts == 1
        assert runtime.initialized is False

    asyncio.run(scenario())


def test_denied_permission_is_not_prompted():
    async def scenario():
        permission = DeniedPermission()
        runtime, _, _ = make_runtime(permission=permission)

        response = await runtime.handle_request(request(MessageType.INITIALIZE_RECOGNITION))

        assert response.code == "permission_denied"
        assert permission.prompts == 0

    asyncio.run(scenario())


def test_unsupported_engine_fails_initialize():
    async def scenario():
        runtime, _, _ = make_runtime(factory=FakeEngineFactory(unsupported=True))

        response = await runtime.handle_request(request(MessageType.INITIALIZE_RECOGNITION))

        assert response.success is False
        assert response.code == "engine_unsupported"

    asyncio.run(scenario())


def test_engine_start_exception_becomes_engine_error_response():
    async def scenario():
        runtime, _, factory = make_runtime()
        await runtime.handle_request(request(MessageType.INITIALIZE_RECOGNITION))
        factory.last.start_error = RuntimeError("device busy")

        response = await runtime.handle_request(request(MessageType.START_RECOGNITION))

        assert response.success is False
        assert response.code == "engine_error"
        assert response.error == "device busy"
        assert runtime.active is False

    asyncio.run(scenario())


def test_unsupported_request_type_fails_without_raising():
    async def scenario():
        runtime, _, _ = make_runtime()

        response = await runtime.handle_request(request(MessageType.REQUEST_START_RECOGNITION))

        assert response.success is False
        assert response.code == "unsupported"

    asyncio.run(scenario())


def test_start_twice_is_a_no_op():
    async def scenario():
        runtime, _, factory = make_runtime()
        await started(runtime)

        response = await runtime.handle_request(request(MessageType.START_RECOGNITION))

        assert response.success is True
        assert factory.last.starts == 1

    asyncio.run(scenario())


def test_set_language_updates_engine():
    async def scenario():
        runtime, _, factory = make_runtime()
        await runtime.handle_request(request(MessageType.INITIALIZE_RECOGNITION, language="ja-JP"))

        await runtime.handle_request(request(MessageType.SET_LANGUAGE, language="en-US"))

        assert runtime.language == "en-US"
        assert factory.last.language == "en-US"

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Engine events
# ---------------------------------------------------------------------

def test_result_is_emitted_with_transcripts():
    async def scenario():
        runtime, endpoint, factory = make_runtime()
        await started(runtime)

        factory.last.result("こんにちは", interim="", confidence=0.92)
        await runtime.wait_idle()

        assert endpoint.messages == [
            Message(MessageType.RECOGNITION_RESULT, {
                "finalTranscript": "こんにちは",
                "interimTranscript": "",
                "confidence": 0.92,
            }),
        ]

    asyncio.run(scenario())


def test_stop_emits_ended_exactly_once():
    async def scenario():
        runtime, endpoint, _ = make_runtime()
        await started(runtime)

        await runtime.handle_request(request(MessageType.STOP_RECOGNITION))
        await runtime.handle_request(request(MessageType.STOP_RECOGNITION))
        await runtime.wait_idle()

        assert endpoint.types() == [MessageType.RECOGNITION_ENDED]
        assert runtime.active is False

    asyncio.run(scenario())


def test_no_speech_restarts_silently(logs):
    async def scenario():
        runtime, endpoint, factory = make_runtime()
        await started(runtime)
        engine = factory.last

        engine.fail("no-speech")
        await wait_until(lambda: engine.running)
        await runtime.wait_idle()

        assert endpoint.messages == []
        assert runtime.active is True
        assert engine.starts == 2

    asyncio.run(scenario())
    decisions = [e["details"].get("decision") for e in logs if e["event_type"] == "ENGINE_ERROR"]
    assert decisions == ["silent"]


def test_network_errors_retry_with_linear_backoff_then_surface(logs):
    async def scenario():
        runtime, endpoint, factory = make_runtime()
        await started(runtime)
        engine = factory.last

        for expected_starts in (2, 3, 4):
            engine.fail("network", "Network error")
            await wait_until(lambda n=expected_starts: engine.starts == n and engine.running)

        assert endpoint.messages == []

        engine.fail("network", "Network error")
        await runtime.wait_idle()

        assert endpoint.messages == [
            Message(MessageType.RECOGNITION_ERROR, {"code": "network", "message": "Network error"}),
            Message(MessageType.RECOGNITION_ENDED),
        ]
        assert runtime.active is False

    asyncio.run(scenario())

    scheduled = [
        e["details"]
        for e in logs
        if e["event_type"] == "ENGINE_ERROR" and e["details"]["decision"] == "retry_scheduled"
    ]
    assert [d["delay_ms"] for d in scheduled] == [1, 2, 3]
    assert [d["attempt"] for d in scheduled] == [1, 2, 3]


def test_result_resets_retry_counter(logs):
    async def scenario():
        runtime, _, factory = make_runtime()
        await started(runtime)
        engine = factory.last

        engine.fail("network")
        await wait_until(lambda: engine.starts == 2 and engine.running)
        engine.result("ok")
        engine.fail("network")
        await wait_until(lambda: engine.starts == 3 and engine.running)
        await runtime.wait_idle()

    asyncio.run(scenario())

    delays = [
        e["details"]["delay_ms"]
        for e in logs
        if e["event_type"] == "ENGINE_ERROR" and e["details"]["decision"] == "retry_scheduled"
    ]
    assert delays == [1, 1]


def test_speech_after_no_speech_makes_the_next_end_final():
    async def scenario():
        runtime, endpoint, factory = make_runtime()
        await started(runtime)
        engine = factory.last

        engine.fail("no-speech", end=False)
        engine.result("もしもし")
        engine.end()
        await runtime.wait_idle()

        assert endpoint.types() == [
            MessageType.RECOGNITION_RESULT,
            MessageType.RECOGNITION_ENDED,
        ]
        assert engine.starts == 1
        assert runtime.active is False

    asyncio.run(scenario())


def test_speech_during_network_retry_keeps_the_restart():
    async def scenario():
        runtime, endpoint, factory = make_runtime(factory=FakeEngineFactory(auto_end_on_stop=False))
        await started(runtime)
        engine = factory.last

        engine.fail("network", end=False)
        await settle()
        engine.result("late")
        engine.end()
        await wait_until(lambda: engine.starts == 2 and engine.running)
        await runtime.wait_idle()

        assert endpoint.types() == [MessageType.RECOGNITION_RESULT]
        assert runtime.active is True

    asyncio.run(scenario())


def test_terminal_error_is_surfaced_immediately():
    async def scenario():
        runtime, endpoint, factory = make_runtime()
        await started(runtime)

        factory.last.fail("not-allowed", "Permission revoked")
        await runtime.wait_idle()

        assert endpoint.messages == [
            Message(MessageType.RECOGNITION_ERROR, {"code": "not-allowed", "message": "Permission revoked"}),
            Message(MessageType.RECOGNITION_ENDED),
        ]

    asyncio.run(scenario())


def test_error_after_explicit_stop_is_swallowed(logs):
    async def scenario():
        runtime, endpoint, factory = make_runtime(factory=FakeEngineFactory(auto_end_on_stop=False))
        await started(runtime)
        engine = factory.last

        await runtime.handle_request(request(MessageType.STOP_RECOGNITION))
        engine.fail("aborted")
        await runtime.wait_idle()

        assert endpoint.types() == [MessageType.RECOGNITION_ENDED]

    asyncio.run(scenario())
    assert any(
        e["event_type"] == "ENGINE_ERROR" and e["details"]["decision"] == "ignored_after_stop"
        for e in logs
    )


def test_stop_between_end_and_restart_emits_ended():
    async def scenario():
        runtime, endpoint, factory = make_runtime()
        runtime._retry_base_delay_ms = 10_000  # pylint: disable=protected-access
        await started(runtime)
        engine = factory.last

        engine.fail("network")
        await settle()
        assert engine.running is False

        await runtime.handle_request(request(MessageType.STOP_RECOGNITION))
        await runtime.wait_idle()

        assert endpoint.types() == [MessageType.RECOGNITION_ENDED]
        assert engine.starts == 1

    asyncio.run(scenario())


def test_destroy_releases_engine_and_ends_session():
    async def scenario():
        runtime, endpoint, factory = make_runtime()
        await started(runtime)
        engine = factory.last

        response = await runtime.handle_request(request(MessageType.DESTROY_RECOGNITION))
        await runtime.wait_idle()

        assert response.success is True
        assert engine.released is True
        assert runtime.initialized is False
        assert endpoint.types() == [MessageType.RECOGNITION_ENDED]

    asyncio.run(scenario())
