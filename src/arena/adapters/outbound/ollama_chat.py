"""Ollama `/api/chat` を httpx で呼び出すチャット補完アダプタ。"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable, Mapping, Sequence

import httpx

from arena.adapters.outbound.ollama_settings import OllamaSettings, resolve_ollama_settings
from arena.application.concurrency.cancellation import (
    CancellationToken,
    DeadlineGuard,
    shielded,
)
from arena.domain.entities.dialogue import ChatMessage
from arena.ports.outbound.chat_completion_port import ChatCompletionPort, ChatRequestError

_LOG = logging.getLogger(__name__)


class OllamaRequestError(ChatRequestError):
    """Ollama API 呼び出し失敗を表す例外。"""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OllamaChatAdapter(ChatCompletionPort):
    """Ollama のチャット API を呼び出す。

    httpx.AsyncClient は呼び出しごとに生成し、終了経路に関わらず閉じる。
    全体期限と無通信期限は DeadlineGuard で監視し、超過時は TIMEOUT で中断する。
    """

    def __init__(
        self,
        *,
        settings_provider: Callable[[], OllamaSettings] = resolve_ollama_settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """接続設定の取得関数と、テスト用に差し替え可能な transport を受け取る。"""
        self._settings_provider = settings_provider
        self._transport = transport

    def host_identity(self) -> str:
        return self._settings_provider().base_url

    async def stream_chat(
        self,
        *,
        model: str,
        messages: Sequence[ChatMessage],
        cancellation: CancellationToken,
        options: Mapping[str, object] | None = None,
    ) -> AsyncIterator[str]:
        """`stream: true` で呼び出し、NDJSON の message.content を順に返す。"""
        settings = self._settings_provider()
        payload = _build_payload(model=model, messages=messages, stream=True, options=options)
        client = self._create_client(settings)
        response: httpx.Response | None = None
        token = cancellation.link()
        guard = DeadlineGuard(
            token,
            overall_seconds=settings.request_timeout_seconds,
            idle_seconds=settings.idle_timeout_seconds,
        )
        guard.start()
        try:
            request = client.build_request(
                "POST",
                settings.chat_url,
                json=payload,
                headers=settings.upstream_headers(),
            )
            response = await token.run(client.send(request, stream=True))
            if response.status_code >= 400:
                body = await token.run(response.aread())
                raise _status_error(response.status_code, body)

            lines = response.aiter_lines()
            while True:
                line = await token.run(_next_line(lines))
                if line is None:
                    return
                guard.touch()
                record = _parse_line(line)
                if record is None:
                    continue
                content, done = _interpret_record(record)
                if content:
                    yield content
                if done:
                    return
        except httpx.HTTPError as exc:
            _LOG.warning("Ollama stream request failed: model=%s error=%s", model, exc)
            raise OllamaRequestError(
                f"Ollama API 呼び出しに失敗しました: {exc.__class__.__name__}"
            ) from exc
        finally:
            guard.close()
            token.close()
            await shielded(_close_transport(response, client))

    async def complete_chat(
        self,
        *,
        model: str,
        messages: Sequence[ChatMessage],
        cancellation: CancellationToken,
        response_format: str | None = None,
        options: Mapping[str, object] | None = None,
    ) -> str:
        """`stream: false` で呼び出し、応答本文をそのまま返す。"""
        settings = self._settings_provider()
        payload = _build_payload(model=model, messages=messages, stream=False, options=options)
        if response_format is not None:
            payload["format"] = response_format
        client = self._create_client(settings)
        with cancellation.link() as token, DeadlineGuard(
            token, overall_seconds=settings.request_timeout_seconds
        ):
            try:
                response = await token.run(
                    client.post(
                        settings.chat_url,
                        json=payload,
                        headers=settings.upstream_headers(),
                    )
                )
            except httpx.HTTPError as exc:
                _LOG.warning("Ollama request failed: model=%s error=%s", model, exc)
                raise OllamaRequestError(
                    f"Ollama API 呼び出しに失敗しました: {exc.__class__.__name__}"
                ) from exc
            finally:
                await shielded(client.aclose())

        if response.status_code >= 400:
            raise _status_error(response.status_code, response.content)
        return response.text

    def _create_client(self, settings: OllamaSettings) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(None, connect=settings.connect_timeout_seconds),
        )


def _build_payload(
    *,
    model: str,
    messages: Sequence[ChatMessage],
    stream: bool,
    options: Mapping[str, object] | None,
) -> dict[str, object]:
    payload: dict[str, object] = {
        "model": model,
        "messages": [message.to_payload() for message in messages],
        "stream": stream,
    }
    if options:
        payload["options"] = dict(options)
    return payload


async def _next_line(lines: AsyncIterator[str]) -> str | None:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None


def _parse_line(line: str) -> object | None:
    text = line.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        _LOG.debug("Skipping malformed NDJSON line: %s", text[:200])
        return None


def _interpret_record(record: object) -> tuple[str, bool]:
    """1 レコードを (増分テキスト, 終了フラグ) に変換する。error レコードは例外にする。"""
    if not isinstance(record, dict):
        return "", False
    error = record.get("error")
    if error:
        raise OllamaRequestError(str(error))
    content = ""
    message = record.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        content = message["content"]
    return content, record.get("done") is True


def _status_error(status_code: int, body: bytes) -> OllamaRequestError:
    text = body.decode("utf-8", errors="replace").strip()
    return OllamaRequestError(text or f"Upstream error {status_code}", status_code=status_code)


async def _close_transport(response: httpx.Response | None, client: httpx.AsyncClient) -> None:
    try:
        if response is not None:
            await response.aclose()
    finally:
        await client.aclose()
