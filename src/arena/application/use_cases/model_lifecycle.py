"""モデルの起動・停止を一元管理するユースケース。"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from arena.application.concurrency.cancellation import (
    CancellationToken,
    CancelReason,
    OperationCancelledError,
    shielded,
)
from arena.application.concurrency.in_flight import InFlightRegistry
from arena.domain.value_objects.model_lifecycle import (
    StartOutcome,
    StartResult,
    StopOutcome,
    normalize_model_name,
)
from arena.ports.outbound.model_process_port import ModelProcessPort
from arena.ports.outbound.model_registry_port import ModelRegistryPort

_LOG = logging.getLogger(__name__)


class ModelUnavailableError(RuntimeError):
    """モデルを利用可能にできなかったことを表す例外。"""

    def __init__(self, model: str, diagnostic: str = "") -> None:
        message = f'Failed to pull model "{model}"'
        if diagnostic:
            message = f"{message}: {diagnostic}"
        super().__init__(message)
        self.model = model
        self.diagnostic = diagnostic


class ModelLifecycleUseCase:
    """モデルの start / stop を担う唯一の窓口。

    stop はモデル名ごとに重複排除し、同時に呼ばれても外部 stop コマンドは
    1 回だけ実行する。stop の失敗は例外にせず StopOutcome.FAILED で返す。
    """

    def __init__(
        self,
        *,
        registry: ModelRegistryPort,
        process: ModelProcessPort,
        in_flight_stops: InFlightRegistry[StopOutcome] | None = None,
    ) -> None:
        """照会ポートとプロセス操作ポートを受け取る。"""
        self._registry = registry
        self._process = process
        self._in_flight_stops: InFlightRegistry[StopOutcome] = (
            in_flight_stops if in_flight_stops is not None else InFlightRegistry()
        )

    @property
    def registry(self) -> ModelRegistryPort:
        return self._registry

    async def start(
        self,
        model: str,
        *,
        cancellation: CancellationToken | None = None,
    ) -> StartResult:
        """モデルを利用可能にする。pull 済みなら何もしない。"""
        key = normalize_model_name(model)
        if not key:
            raise ValueError("model は空にできません。")
        token = cancellation if cancellation is not None else CancellationToken()

        if await asyncio.to_thread(self._registry.is_pulled, key):
            return StartResult(model=key, outcome=StartOutcome.AVAILABLE)
        if token.cancelled:
            return StartResult(model=key, outcome=StartOutcome.ABORTED)

        _LOG.info("Pulling model: model=%s", key)
        pull_result = await self._process.pull_model(key, token)
        if pull_result.aborted:
            _LOG.info("Model pull aborted: model=%s", key)
            return StartResult(model=key, outcome=StartOutcome.ABORTED)
        if not pull_result.succeeded:
            _LOG.warning("Model pull failed: model=%s output=%s", key, pull_result.output)
            return StartResult(
                model=key,
                outcome=StartOutcome.UNAVAILABLE,
                diagnostic=pull_result.output,
            )
        _LOG.info("Model available: model=%s", key)
        return StartResult(model=key, outcome=StartOutcome.AVAILABLE)

    async def stop(self, model: str) -> StopOutcome:
        """モデルを停止する。同名の stop が実行中ならその結果を共有する。"""
        key = normalize_model_name(model)
        if not key:
            return StopOutcome.SKIPPED
        return await self._in_flight_stops.join(key, lambda: self._stop_once(key))

    async def stop_many(self, models: Iterable[str]) -> dict[str, StopOutcome]:
        """複数モデルを並行に停止し、モデル名ごとの結果を返す。"""
        keys = list(dict.fromkeys(key for key in map(normalize_model_name, models) if key))
        outcomes = await asyncio.gather(*(self.stop(key) for key in keys))
        return dict(zip(keys, outcomes, strict=True))

    async def stop_all(self, *, running_only: bool = True) -> dict[str, StopOutcome]:
        """稼働中 (または pull 済み) の全モデルを停止する。アプリ終了時に使う。"""
        lister = (
            self._registry.list_running_models
            if running_only
            else self._registry.list_pulled_models
        )
        models = await asyncio.to_thread(lister)
        if not models:
            return {}
        _LOG.info("Stopping %s model(s) on shutdown", len(models))
        return await self.stop_many(sorted(models))

    def stop_all_sync(self, *, running_only: bool = False) -> dict[str, StopOutcome]:
        """pull 済み (running_only なら稼働中) の全モデルを同期的に停止する。

        シグナルや未捕捉例外のハンドラから呼ぶため、イベントループに依存しない。
        """
        lister = (
            self._registry.list_running_models
            if running_only
            else self._registry.list_pulled_models
        )
        outcomes: dict[str, StopOutcome] = {}
        for model in sorted(lister()):
            try:
                stopped = self._process.stop_model(model)
            except Exception:
                _LOG.exception("Failed to stop model synchronously: model=%s", model)
                stopped = False
            outcomes[model] = StopOutcome.STOPPED if stopped else StopOutcome.FAILED
            _LOG.info("Sync stop: model=%s outcome=%s", model, outcomes[model].value)
        return outcomes

    async def _stop_once(self, key: str) -> StopOutcome:
        try:
            if not await asyncio.to_thread(self._registry.is_pulled, key):
                return StopOutcome.SKIPPED
            stopped = await asyncio.to_thread(self._process.stop_model, key)
        except Exception:
            _LOG.exception("Failed to stop model: model=%s", key)
            return StopOutcome.FAILED

        if not stopped:
            _LOG.warning("Model stop command failed: model=%s", key)
            return StopOutcome.FAILED
        _LOG.info("Model stopped: model=%s", key)
        return StopOutcome.STOPPED


class ModelReleaseGuard:
    """1 リクエストで使用中にしたモデルを、どの終了経路でも 1 回だけ停止する。"""

    def __init__(self, lifecycle: ModelLifecycleUseCase) -> None:
        """停止に使うライフサイクルユースケースを受け取る。"""
        self._lifecycle = lifecycle
        self._models: list[str] = []
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def models(self) -> tuple[str, ...]:
        return tuple(self._models)

    def mark_in_use(self, *models: str) -> None:
        for model in models:
            key = normalize_model_name(model)
            if key and key not in self._models:
                self._models.append(key)

    def forget(self, model: str) -> None:
        """停止対象から外す。後続リクエストへ所有が移ったモデルに使う。"""
        key = normalize_model_name(model)
        if key in self._models:
            self._models.remove(key)

    async def release(self) -> dict[str, StopOutcome]:
        """使用中モデルを停止する。2 回目以降の呼び出しは何もしない。

        既にキャンセルされたコンテキストから呼ばれても停止処理は最後まで実行される。
        """
        if self._released:
            return {}
        self._released = True
        models, self._models = self._models, []
        if not models:
            return {}
        outcomes = await shielded(self._lifecycle.stop_many(models))
        for model, outcome in outcomes.items():
            if outcome is StopOutcome.FAILED:
                _LOG.warning('Failed to stop model "%s" during cleanup.', model)
        return outcomes


def start_failure_error(result: StartResult) -> Exception:
    """失敗した StartResult を呼び出し側へ送出する例外に変換する。"""
    if result.outcome is StartOutcome.ABORTED:
        return OperationCancelledError(CancelReason.ABORTED)
    return ModelUnavailableError(result.model, result.diagnostic)
