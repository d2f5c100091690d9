"""単一モデルへの比較用チャットをストリーミングするユースケース。"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass

from arena.application.concurrency.active_runs import ActiveRunRegistry, RunHandle
from arena.application.concurrency.cancellation import (
    CancellationToken,
    LinkedCancellationToken,
    shielded,
)
from arena.application.use_cases.model_lifecycle import (
    ModelLifecycleUseCase,
    ModelReleaseGuard,
    start_failure_error,
)
from arena.domain.entities.dialogue import ChatMessage
from arena.domain.value_objects.model_lifecycle import normalize_model_name
from arena.ports.outbound.chat_completion_port import ChatCompletionPort

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CompareRequest:
    """比較チャット 1 回分の入力。"""

    model: str
    messages: tuple[ChatMessage, ...]

    def __post_init__(self) -> None:
        """モデル名と空でないメッセージ列を要求する。"""
        if not normalize_model_name(self.model):
            raise ValueError("Model is required.")
        if not any(message.content.strip() for message in self.messages):
            raise ValueError("Messages are required.")

    @classmethod
    def build(cls, *, model: str, messages: Sequence[ChatMessage]) -> CompareRequest:
        """前後空白を除去し、空メッセージを取り除いてリクエストを作る。"""
        normalized = tuple(
            ChatMessage(role=message.role, content=message.content.strip())
            for message in messages
            if message.content.strip()
        )
        return cls(model=normalize_model_name(model), messages=normalized)


class DeltaStream:
    """先頭の増分を先読み済みのストリーム。

    先読みにより上流のエラーをレスポンスヘッダ送信前に検出できる。
    終了処理はどの経路でも 1 回だけ実行される。
    """

    def __init__(
        self,
        source: AsyncIterator[str],
        *,
        on_close: Callable[[], Awaitable[None]],
    ) -> None:
        """増分の供給元と終了時処理を受け取る。"""
        self._source = source
        self._on_close = on_close
        self._buffered: list[str] = []
        self._exhausted = False
        self._closed = False

    async def prime(self) -> None:
        """最初の増分を読み込む。失敗時はストリームを閉じてから例外を送出する。"""
        try:
            async for delta in self._source:
                self._buffered.append(delta)
                return
            self._exhausted = True
        except BaseException:
            await self.aclose()
            raise

    async def iter_deltas(self) -> AsyncIterator[str]:
        try:
            while self._buffered:
                yield self._buffered.pop(0)
            if not self._exhausted:
                async for delta in self._source:
                    yield delta
        finally:
            await self.aclose()

    async def collect_text(self) -> str:
        """全増分を連結して返す。"""
        parts = [delta async for delta in self.iter_deltas()]
        return "".join(parts)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await shielded(self._close_source_and_notify())

    async def _close_source_and_notify(self) -> None:
        try:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            await self._on_close()


class CompareStreamUseCase:
    """モデル起動、latest-wins 制御、ストリーム、停止までを 1 リクエスト単位で扱う。"""

    def __init__(
        self,
        *,
        lifecycle: ModelLifecycleUseCase,
        chat: ChatCompletionPort,
        active_runs: ActiveRunRegistry | None = None,
    ) -> None:
        """依存ポートと共有の実行中ランレジストリを受け取る。"""
        self._lifecycle = lifecycle
        self._chat = chat
        self._active_runs = active_runs if active_runs is not None else ActiveRunRegistry()

    @property
    def active_runs(self) -> ActiveRunRegistry:
        return self._active_runs

    async def open_stream(
        self,
        request: CompareRequest,
        *,
        cancellation: CancellationToken,
    ) -> DeltaStream:
        """モデルを起動して上流ストリームを開き、先頭の増分まで読み込んで返す。"""
        release = ModelReleaseGuard(self._lifecycle)
        release.mark_in_use(request.model)
        try:
            start_result = await self._lifecycle.start(request.model, cancellation=cancellation)
            if not start_result.available:
                raise start_failure_error(start_result)
        except BaseException:
            await release.release()
            raise

        handle = self._active_runs.begin((self._chat.host_identity(), request.model))
        token = CancellationToken.merge(cancellation, handle.token)
        source = self._chat.stream_chat(
            model=request.model,
            messages=request.messages,
            cancellation=token,
        )
        stream = DeltaStream(
            source,
            on_close=lambda: self._finish_run(
                handle=handle, token=token, release=release, model=request.model
            ),
        )
        await stream.prime()
        return stream

    async def complete(self, request: CompareRequest, *, cancellation: CancellationToken) -> str:
        """ストリームを最後まで読み、連結したテキストを返す。"""
        stream = await self.open_stream(request, cancellation=cancellation)
        return await stream.collect_text()

    async def _finish_run(
        self,
        *,
        handle: RunHandle,
        token: LinkedCancellationToken,
        release: ModelReleaseGuard,
        model: str,
    ) -> None:
        token.close()
        self._active_runs.finish(handle)
        if token.cancelled:
            _LOG.info(
                "Compare run ended early: model=%s run=%s reason=%s",
                model,
                handle.run_id,
                token.reason.value if token.reason else "",
            )
        if self._active_runs.current(handle.key) is not None:
            # 後続ランがモデルを使用中のため停止しない。
            release.forget(model)
        await release.release()

