"""モデル配信ホストとチャット API のテスト用 in-memory 代替実装。"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from dataclasses import dataclass

from arena.application.concurrency.cancellation import (
    CancellationToken,
    OperationCancelledError,
)
from arena.domain.entities.dialogue import ChatMessage
from arena.domain.value_objects.model_lifecycle import PullResult, normalize_model_name
from arena.ports.outbound.chat_completion_port import ChatCompletionPort, ChatRequestError
from arena.ports.outbound.model_process_port import ModelProcessPort
from arena.ports.outbound.model_registry_port import ModelRegistryPort


class InMemoryModelHost(ModelRegistryPort, ModelProcessPort):
    """pull 済み・稼働中モデルを集合で保持する簡易ホスト。"""

    def __init__(
        self,
        *,
        pulled: Iterable[str] = (),
        running: Iterable[str] = (),
        pullable: Iterable[str] | None = None,
        failing_stops: Iterable[str] = (),
        pull_delay_seconds: float = 0.0,
        stop_delay_seconds: float = 0.0,
    ) -> None:
        """初期状態を受け取る。pullable が None なら任意のモデルを pull できる。"""
        self._lock = threading.Lock()
        self._pulled = set(pulled)
        self._running = set(running)
        self._pullable = None if pullable is None else set(pullable)
        self._failing_stops = set(failing_stops)
        self._pull_delay_seconds = pull_delay_seconds
        self._stop_delay_seconds = stop_delay_seconds
        self.pull_calls: list[str] = []
        self.stop_calls: list[str] = []

    def list_pulled_models(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._pulled)

    def list_running_models(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._running)

    def is_pulled(self, model: str) -> bool:
        return normalize_model_name(model) in self.list_pulled_models()

    def is_running(self, model: str) -> bool:
        return normalize_model_name(model) in self.list_running_models()

    async def pull_model(self, model: str, cancellation: CancellationToken) -> PullResult:
        self.pull_calls.append(model)
        if self._pull_delay_seconds > 0:
            try:
                await cancellation.run(asyncio.sleep(self._pull_delay_seconds))
            except OperationCancelledError:
                return PullResult(succeeded=False, aborted=True)
        if cancellation.cancelled:
            return PullResult(succeeded=False, aborted=True)
        if self._pullable is not None and model not in self._pullable:
            return PullResult(
                succeeded=False,
                output=f"pull model manifest: file does not exist: {model}",
            )
        with self._lock:
            self._pulled.add(model)
            self._running.add(model)
        return PullResult(succeeded=True, output="success")

    def stop_model(self, model: str) -> bool:
        if self._stop_delay_seconds > 0:
            time.sleep(self._stop_delay_seconds)
        with self._lock:
            self.stop_calls.append(model)
            if model in self._failing_stops:
                return False
            self._running.discard(model)
        return True


@dataclass(frozen=True, slots=True)
class RecordedChatCall:
    """ScriptedChatAdapter が受け取った 1 回分の呼び出し。"""

    model: str
    messages: tuple[ChatMessage, ...]
    stream: bool
    response_format: str | None = None
    options: Mapping[str, object] | None = None


class ScriptedChatAdapter(ChatCompletionPort):
    """モデルごとに用意した応答を順に返すチャットアダプタ。

    replies はモデル名から「1 回の呼び出しで返す増分列」のリストへの対応で、
    呼び出しのたびに先頭から消費する。使い切った後は最後の応答を繰り返す。
    hang_after_deltas が True の場合は増分を返し切った後にキャンセルまで待機する。
    """

    def __init__(
        self,
        *,
        replies: Mapping[str, Sequence[Sequence[str]]] | None = None,
        completions: Mapping[str, str] | None = None,
        delta_delay_seconds: float = 0.0,
        hang_after_deltas: bool = False,
        failure: ChatRequestError | None = None,
        host: str = "memory://ollama",
    ) -> None:
        """応答スクリプトと振る舞いの設定を受け取る。"""
        self._replies = {model: list(items) for model, items in (replies or {}).items()}
        self._reply_index: dict[str, int] = {}
        self._completions = dict(completions or {})
        self._delta_delay_seconds = delta_delay_seconds
        self._hang_after_deltas = hang_after_deltas
        self._failure = failure
        self._host = host
        self.calls: list[RecordedChatCall] = []
        self.open_streams = 0

    def host_identity(self) -> str:
        return self._host

    async def stream_chat(
        self,
        *,
        model: str,
        messages: Sequence[ChatMessage],
        cancellation: CancellationToken,
        options: Mapping[str, object] | None = None,
    ) -> AsyncIterator[str]:
        self.calls.append(
            RecordedChatCall(model=model, messages=tuple(messages), stream=True, options=options)
        )
        self.open_streams += 1
        try:
            for delta in self._next_reply(model):
                cancellation.raise_if_cancelled()
                if self._delta_delay_seconds > 0:
                    await cancellation.run(asyncio.sleep(self._delta_delay_seconds))
                yield delta
            if self._failure is not None:
                raise self._failure
            if self._hang_after_deltas:
                await cancellation.run(asyncio.Event().wait())
        finally:
            self.open_streams -= 1

    async def complete_chat(
        self,
        *,
        model: str,
        messages: Sequence[ChatMessage],
        cancellation: CancellationToken,
        response_format: str | None = None,
        options: Mapping[str, object] | None = None,
    ) -> str:
        self.calls.append(
            RecordedChatCall(
                model=model,
                messages=tuple(messages),
                stream=False,
                response_format=response_format,
                options=options,
            )
        )
        cancellation.raise_if_cancelled()
        if self._hang_after_deltas:
            await cancellation.run(asyncio.Event().wait())
        if self._failure is not None:
            raise self._failure
        return self._completions.get(model, "")

    def _next_reply(self, model: str) -> Sequence[str]:
        items = self._replies.get(model)
        if not items:
            return ()
        index = self._reply_index.get(model, 0)
        self._reply_index[model] = index + 1
        return items[min(index, len(items) - 1)]
