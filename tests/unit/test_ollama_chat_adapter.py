import asyncio
import json
from collections.abc import AsyncIterator

import httpx
import pytest

from arena.adapters.outbound.ollama_chat import OllamaChatAdapter, OllamaRequestError
from arena.adapters.outbound.ollama_settings import OllamaSettings
from arena.application.concurrency.cancellation import (
    CancellationToken,
    CancelReason,
    OperationCancelledError,
)
from arena.domain.entities.dialogue import ChatMessage

_MESSAGES = (ChatMessage(role="user", content="こんにちは"),)


def _adapter(handler, **settings: object) -> OllamaChatAdapter:
    resolved = OllamaSettings(base_url="http://ollama.test:11434", **settings)
    return OllamaChatAdapter(
        settings_provider=lambda: resolved,
        transport=httpx.MockTransport(handler),
    )


def _chunks(*parts: bytes, hang: bool = False) -> AsyncIterator[bytes]:
    async def body() -> AsyncIterator[bytes]:
        for part in parts:
            yield part
        if hang:
            await asyncio.sleep(10)

    return body()


async def _collect(adapter: OllamaChatAdapter, token: CancellationToken | None = None) -> list[str]:
    return [
        delta
        async for delta in adapter.stream_chat(
            model="llama3",
            messages=_MESSAGES,
            cancellation=token or CancellationToken(),
        )
    ]


@pytest.mark.asyncio
async def test_stream_reassembles_records_split_across_chunks() -> None:
    captured: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(
            200,
            content=_chunks(
                b'{"message":{"content":"Hel',
                b'lo"},"done":false}\n{"message":{"content":" world"},"done":false}\n',
                b"not json\n",
                b'{"message":{"content":""},"done":true}\n',
                b'{"message":{"content":"ignored"},"done":false}\n',
            ),
        )

    deltas = await _collect(_adapter(handler, api_key="secret"))

    assert deltas == ["Hello", " world"]
    request = captured[0]
    assert str(request.url) == "http://ollama.test:11434/api/chat"
    assert request.headers["X-API-Key"] == "secret"
    assert json.loads(request.content) == {
        "model": "llama3",
        "messages": [{"role": "user", "content": "こんにちは"}],
        "stream": True,
    }


@pytest.mark.asyncio
async def test_stream_decodes_multibyte_text_split_across_chunks() -> None:
    encoded = '{"message":{"content":"日本"}}\n'.encode()

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=_chunks(encoded[:25], encoded[25:] + b"garbage\n\n", b'{"done":true}'),
        )

    assert await _collect(_adapter(handler)) == ["日本"]


@pytest.mark.asyncio
async def test_last_record_without_newline_is_flushed() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_chunks(b'{"message":{"content":"tail"}}'))

    assert await _collect(_adapter(handler)) == ["tail"]


@pytest.mark.asyncio
async def test_error_record_raises_upstream_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=_chunks(b'{"message":{"content":"a"}}\n{"error":"model crashed"}\n'),
        )

    with pytest.raises(OllamaRequestError, match="model crashed"):
        await _collect(_adapter(handler))


@pytest.mark.asyncio
async def test_non_success_status_carries_upstream_body() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, content=b'{"error":"model \\"x\\" not found"}')

    with pytest.raises(OllamaRequestError) as exc_info:
        await _collect(_adapter(handler))

    assert exc_info.value.status_code == 404
    assert "not found" in str(exc_info.value)


@pytest.mark.asyncio
async def test_connection_failure_is_wrapped() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(OllamaRequestError, match="ConnectError"):
        await _collect(_adapter(handler))


@pytest.mark.asyncio
async def test_idle_timeout_cancels_with_timeout_reason() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_chunks(b'{"message":{"content":"a"}}\n', hang=True))

    with pytest.raises(OperationCancelledError) as exc_info:
        await _collect(_adapter(handler, idle_timeout_seconds=0.05))

    assert exc_info.value.reason is CancelReason.TIMEOUT


@pytest.mark.asyncio
async def test_client_cancellation_interrupts_read() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_chunks(b'{"message":{"content":"a"}}\n', hang=True))

    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.05, token.cancel, CancelReason.ABORTED)

    with pytest.raises(OperationCancelledError) as exc_info:
        await _collect(_adapter(handler), token)

    assert exc_info.value.reason is CancelReason.ABORTED


@pytest.mark.asyncio
async def test_complete_chat_returns_raw_body() -> None:
    captured: list[httpx.Request] = []
    body = json.dumps({"message": {"role": "assistant", "content": "{}"}, "done": True})

    async def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, content=body.encode())

    text = await _adapter(handler).complete_chat(
        model="judge",
        messages=_MESSAGES,
        cancellation=CancellationToken(),
        response_format="json",
        options={"temperature": 0.2},
    )

    assert text == body
    payload = json.loads(captured[0].content)
    assert payload["stream"] is False
    assert payload["format"] == "json"
    assert payload["options"] == {"temperature": 0.2}
    assert "X-API-Key" not in captured[0].headers


@pytest.mark.asyncio
async def test_complete_chat_raises_on_error_status() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, content=b"")

    with pytest.raises(OllamaRequestError, match="Upstream error 500"):
        await _adapter(handler).complete_chat(
            model="judge",
            messages=_MESSAGES,
            cancellation=CancellationToken(),
        )
