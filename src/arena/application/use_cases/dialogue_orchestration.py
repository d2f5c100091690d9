"""2 モデル間の交互対話 (clash) を駆動するユースケース。"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from enum import Enum

from arena.application.concurrency.cancellation import (
    CancellationToken,
    CancelReason,
    OperationCancelledError,
)
from arena.application.use_cases.model_lifecycle import (
    ModelLifecycleUseCase,
    ModelReleaseGuard,
    ModelUnavailableError,
)
from arena.domain.entities.dialogue import (
    Complete,
    ConversationTurn,
    Delta,
    Speaker,
    StreamError,
    StreamEvent,
    TurnEnd,
    TurnStart,
)
from arena.domain.services.dialogue_context import build_turn_messages, total_turns
from arena.domain.value_objects.model_lifecycle import (
    StartOutcome,
    StartResult,
    normalize_model_name,
)
from arena.ports.outbound.chat_completion_port import ChatCompletionPort, ChatRequestError

_LOG = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 3


class DialogueState(str, Enum):
    """対話ランの状態。"""

    IDLE = "idle"
    PULLING_MODELS = "pulling-models"
    TURN = "turn"
    COMPLETE = "complete"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class DialogueRequest:
    """対話ラン 1 回分の入力。start_from_turn と history で続きから再開できる。"""

    model_a: str
    model_b: str
    system_prompt: str
    user_prompt: str
    max_rounds: int = DEFAULT_MAX_ROUNDS
    start_from_turn: int = 1
    history: tuple[ConversationTurn, ...] = ()

    def __post_init__(self) -> None:
        """必須項目と数値範囲を検証する。"""
        if not normalize_model_name(self.model_a) or not normalize_model_name(self.model_b):
            raise ValueError("Both models are required.")
        if not self.system_prompt.strip() or not self.user_prompt.strip():
            raise ValueError("System and user prompts are required.")
        if self.max_rounds < 1:
            raise ValueError("maxRounds は 1 以上である必要があります。")
        if self.start_from_turn < 1:
            raise ValueError("startFromTurn は 1 以上である必要があります。")

    @property
    def models(self) -> tuple[str, ...]:
        """重複を除いた使用モデル名を返す。"""
        return tuple(
            dict.fromkeys((normalize_model_name(self.model_a), normalize_model_name(self.model_b)))
        )

    def model_for(self, speaker: Speaker) -> str:
        model = self.model_a if speaker is Speaker.A else self.model_b
        return normalize_model_name(model)


class DialogueRun:
    """1 回の対話ラン。prepare() でモデルを起動し、events() でイベントを流す。

    どの終了経路 (完了・エラー・キャンセル・consumer 側の close) でも
    使用中モデルの停止が 1 回だけ実行される。
    """

    def __init__(
        self,
        *,
        request: DialogueRequest,
        lifecycle: ModelLifecycleUseCase,
        chat: ChatCompletionPort,
        cancellation: CancellationToken,
    ) -> None:
        """入力と依存、呼び出し元のキャンセルトークンを受け取る。"""
        self._request = request
        self._lifecycle = lifecycle
        self._chat = chat
        self._token = CancellationToken.merge(cancellation)
        self._release = ModelReleaseGuard(lifecycle)
        self._history: list[ConversationTurn] = list(request.history)
        self._state = DialogueState.IDLE
        self._last_completed_turn = request.start_from_turn - 1

    @property
    def state(self) -> DialogueState:
        return self._state

    @property
    def history(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._history)

    @property
    def last_completed_turn(self) -> int:
        return self._last_completed_turn

    def cancel(self, reason: CancelReason = CancelReason.ABORTED) -> None:
        """実行中の上流読み込みを中断させる。"""
        self._token.cancel(reason)

    async def prepare(self) -> None:
        """両モデルを並行に起動する。どちらかが失敗したらもう一方も中断して例外を送出する。"""
        if self._state is not DialogueState.IDLE:
            raise RuntimeError("prepare() は 1 回だけ呼び出せます。")
        self._state = DialogueState.PULLING_MODELS
        pull_token = CancellationToken.merge(self._token)
        try:
            results = await asyncio.gather(
                *(self._start_model(model, pull_token) for model in self._request.models)
            )
        except BaseException:
            self._state = DialogueState.ERROR
            await self.close()
            raise
        finally:
            pull_token.close()

        failure = _select_start_failure(results, client_reason=self._token.reason)
        if failure is not None:
            self._state = (
                DialogueState.ABORTED
                if isinstance(failure, OperationCancelledError)
                else DialogueState.ERROR
            )
            await self.close()
            raise failure

    async def events(self) -> AsyncIterator[StreamEvent]:
        """ターンを順に実行し、イベントを返す。終端で必ず close() する。"""
        if self._state is not DialogueState.PULLING_MODELS:
            raise RuntimeError("events() の前に prepare() が必要です。")
        last_turn = total_turns(self._request.max_rounds)
        try:
            for turn in range(self._request.start_from_turn, last_turn + 1):
                self._token.raise_if_cancelled()
                self._state = DialogueState.TURN
                speaker = Speaker.for_turn(turn)
                yield TurnStart(speaker=speaker, turn=turn)

                parts: list[str] = []
                turn_stream = self._open_turn_stream(speaker)
                try:
                    async for delta in turn_stream:
                        parts.append(delta)
                        yield Delta(speaker=speaker, turn=turn, content=delta)
                finally:
                    await _close_stream(turn_stream)

                content = "".join(parts)
                if content.strip():
                    self._history.append(
                        ConversationTurn(speaker=speaker, content=content, turn_number=turn)
                    )
                else:
                    _LOG.info("Discarding empty turn: turn=%s speaker=%s", turn, speaker.value)
                self._last_completed_turn = turn
                yield TurnEnd(speaker=speaker, turn=turn)

            self._state = DialogueState.COMPLETE
            yield Complete()
        except OperationCancelledError as exc:
            self._state = DialogueState.ABORTED
            if exc.is_timeout:
                _LOG.warning("Dialogue timed out: turn=%s", self._last_completed_turn + 1)
                yield StreamError(message="timeout")
            else:
                _LOG.info("Dialogue aborted: reason=%s", exc.reason.value)
        except ChatRequestError as exc:
            self._state = DialogueState.ERROR
            _LOG.warning("Dialogue upstream error: %s", exc)
            yield StreamError(message=str(exc))
        except Exception as exc:
            self._state = DialogueState.ERROR
            _LOG.exception("Dialogue failed unexpectedly")
            yield StreamError(message=str(exc) or exc.__class__.__name__)
        finally:
            if self._state in (DialogueState.TURN, DialogueState.PULLING_MODELS):
                self._state = DialogueState.ABORTED
            await self.close()

    async def close(self) -> None:
        """上流読み込みを止め、使用中モデルを停止する。冪等。"""
        self._token.cancel(CancelReason.ABORTED)
        self._token.close()
        await self._release.release()

    async def _start_model(self, model: str, pull_token: CancellationToken) -> StartResult:
        result = await self._lifecycle.start(model, cancellation=pull_token)
        if result.available:
            self._release.mark_in_use(model)
        else:
            pull_token.cancel(CancelReason.ABORTED)
        return result

    def _open_turn_stream(self, speaker: Speaker) -> AsyncIterator[str]:
        messages = build_turn_messages(
            system_prompt=self._request.system_prompt,
            user_prompt=self._request.user_prompt,
            history=self._history,
            speaker=speaker,
        )
        return self._chat.stream_chat(
            model=self._request.model_for(speaker),
            messages=messages,
            cancellation=self._token,
        )


class DialogueOrchestrator:
    """DialogueRun を生成するファクトリ。"""

    def __init__(self, *, lifecycle: ModelLifecycleUseCase, chat: ChatCompletionPort) -> None:
        """ライフサイクル管理とチャットポートを受け取る。"""
        self._lifecycle = lifecycle
        self._chat = chat

    def create_run(
        self,
        request: DialogueRequest,
        *,
        cancellation: CancellationToken,
    ) -> DialogueRun:
        return DialogueRun(
            request=request,
            lifecycle=self._lifecycle,
            chat=self._chat,
            cancellation=cancellation,
        )

    async def run(
        self,
        request: DialogueRequest,
        *,
        cancellation: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        """prepare と events をまとめて実行する。"""
        dialogue = self.create_run(request, cancellation=cancellation)
        await dialogue.prepare()
        async for event in dialogue.events():
            yield event


def _select_start_failure(
    results: Sequence[StartResult],
    *,
    client_reason: CancelReason | None,
) -> Exception | None:
    """起動結果から送出すべき例外を選ぶ。本来の失敗を誘発された中断より優先する。"""
    if client_reason is not None:
        return OperationCancelledError(client_reason)
    for result in results:
        if result.outcome is StartOutcome.UNAVAILABLE:
            return ModelUnavailableError(result.model, result.diagnostic)
    for result in results:
        if result.outcome is StartOutcome.ABORTED:
            return OperationCancelledError(CancelReason.ABORTED)
    return None


async def _close_stream(stream: AsyncIterator[str]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()
