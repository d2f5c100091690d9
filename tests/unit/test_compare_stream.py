import pytest

from arena.adapters.outbound.in_memory_components import InMemoryModelHost, ScriptedChatAdapter
from arena.application.concurrency.cancellation import (
    CancellationToken,
    CancelReason,
    OperationCancelledError,
)
from arena.application.use_cases.compare_stream import CompareRequest, CompareStreamUseCase
from arena.application.use_cases.model_lifecycle import (
    ModelLifecycleUseCase,
    ModelUnavailableError,
)
from arena.domain.entities.dialogue import ChatMessage
from arena.ports.outbound.chat_completion_port import ChatRequestError


def _request(model: str = "llama3") -> CompareRequest:
    return CompareRequest.build(
        model=model,
        messages=[
            ChatMessage(role="user", content=" こんにちは "),
            ChatMessage(role="user", content=""),
        ],
    )


def _build_use_case(
    host: InMemoryModelHost,
    chat: ScriptedChatAdapter,
) -> CompareStreamUseCase:
    return CompareStreamUseCase(
        lifecycle=ModelLifecycleUseCase(registry=host, process=host),
        chat=chat,
    )


def test_request_validation_messages() -> None:
    with pytest.raises(ValueError, match="Model is required."):
        CompareRequest.build(model=" ", messages=[ChatMessage(role="user", content="hi")])
    with pytest.raises(ValueError, match="Messages are required."):
        CompareRequest.build(model="llama3", messages=[ChatMessage(role="user", content=" ")])


@pytest.mark.asyncio
async def test_complete_streams_all_deltas_and_stops_model() -> None:
    host = InMemoryModelHost(pulled={"llama3"})
    chat = ScriptedChatAdapter(replies={"llama3": [["Hello", ", ", "world"]]})
    use_case = _build_use_case(host, chat)

    text = await use_case.complete(_request(), cancellation=CancellationToken())

    assert text == "Hello, world"
    assert chat.calls[0].messages == (ChatMessage(role="user", content="こんにちは"),)
    assert host.stop_calls == ["llama3"]
    assert len(use_case.active_runs) == 0


@pytest.mark.asyncio
async def test_start_failure_raises_without_calling_upstream() -> None:
    host = InMemoryModelHost(pullable=set())
    chat = ScriptedChatAdapter(replies={"llama3": [["unused"]]})

    with pytest.raises(ModelUnavailableError):
        await _build_use_case(host, chat).open_stream(_request(), cancellation=CancellationToken())

    assert chat.calls == []


@pytest.mark.asyncio
async def test_upstream_error_before_first_delta_is_raised_from_open() -> None:
    host = InMemoryModelHost(pulled={"llama3"})
    chat = ScriptedChatAdapter(failure=ChatRequestError("model not found"))

    with pytest.raises(ChatRequestError, match="model not found"):
        await _build_use_case(host, chat).open_stream(_request(), cancellation=CancellationToken())

    assert host.stop_calls == ["llama3"]
    assert chat.open_streams == 0


@pytest.mark.asyncio
async def test_client_cancel_mid_stream_stops_model() -> None:
    host = InMemoryModelHost(pulled={"llama3"})
    chat = ScriptedChatAdapter(replies={"llama3": [["a", "b"]]}, hang_after_deltas=True)
    client = CancellationToken()
    stream = await _build_use_case(host, chat).open_stream(_request(), cancellation=client)
    received: list[str] = []

    with pytest.raises(OperationCancelledError) as exc_info:
        async for delta in stream.iter_deltas():
            received.append(delta)
            if len(received) == 2:
                client.cancel(CancelReason.ABORTED)

    assert received == ["a", "b"]
    assert exc_info.value.reason is CancelReason.ABORTED
    assert host.stop_calls == ["llama3"]
    assert chat.open_streams == 0


@pytest.mark.asyncio
async def test_newer_request_supersedes_and_keeps_model_running() -> None:
    host = InMemoryModelHost(pulled={"llama3"})
    chat = ScriptedChatAdapter(replies={"llama3": [["first"], ["second"]]}, hang_after_deltas=True)
    use_case = _build_use_case(host, chat)
    newer_client = CancellationToken()

    older = await use_case.open_stream(_request(), cancellation=CancellationToken())
    newer = await use_case.open_stream(_request(), cancellation=newer_client)

    with pytest.raises(OperationCancelledError) as exc_info:
        async for _ in older.iter_deltas():
            pass

    assert exc_info.value.reason is CancelReason.SUPERSEDED
    assert host.stop_calls == []

    newer_client.cancel()
    with pytest.raises(OperationCancelledError):
        async for _ in newer.iter_deltas():
            pass

    assert host.stop_calls == ["llama3"]
    assert len(use_case.active_runs) == 0


@pytest.mark.asyncio
async def test_only_newer_request_runs_to_completion() -> None:
    host = InMemoryModelHost(pulled={"llama3"})
    chat = ScriptedChatAdapter(replies={"llama3": [["o1", "o2"], ["n1", "n2"]]})
    use_case = _build_use_case(host, chat)

    older = await use_case.open_stream(_request(), cancellation=CancellationToken())
    newer = await use_case.open_stream(_request(), cancellation=CancellationToken())
    older_deltas: list[str] = []

    with pytest.raises(OperationCancelledError) as exc_info:
        async for delta in older.iter_deltas():
            older_deltas.append(delta)

    assert older_deltas == ["o1"]
    assert exc_info.value.reason is CancelReason.SUPERSEDED
    assert host.stop_calls == []

    assert await newer.collect_text() == "n1n2"
    assert host.stop_calls == ["llama3"]
    assert len(use_case.active_runs) == 0
