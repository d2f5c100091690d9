"""明示的に受け渡すキャンセルトークンと期限管理。

キャンセル元 (クライアント切断・全体期限・無通信期限・後続リクエストによる置換)
はすべてトークンへ集約し、下流はトークン 1 つだけを監視する。
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from enum import Enum
from types import TracebackType
from typing import Any, TypeVar

_LOG = logging.getLogger(__name__)

T = TypeVar("T")

CancelCallback = Callable[["CancelReason"], None]

# shielded() で切り離したタスクの参照を保持し、途中で GC されないようにする。
_DETACHED_TASKS: set[asyncio.Task[Any]] = set()


class CancelReason(str, Enum):
    """キャンセル理由。ログとステータスの出し分けに使う。"""

    ABORTED = "aborted"
    TIMEOUT = "timeout"
    SUPERSEDED = "superseded"
    SHUTDOWN = "shutdown"


class OperationCancelledError(Exception):
    """トークンのキャンセルによって処理が中断されたことを表す例外。"""

    def __init__(self, reason: CancelReason) -> None:
        super().__init__(f"operation cancelled: {reason.value}")
        self.reason = reason

    @property
    def is_timeout(self) -> bool:
        """期限超過による中断かを返す。"""
        return self.reason is CancelReason.TIMEOUT


class CancellationToken:
    """一度だけ発火するキャンセル通知。"""

    def __init__(self) -> None:
        """未キャンセル状態で初期化する。"""
        self._reason: CancelReason | None = None
        self._event = asyncio.Event()
        self._callbacks: dict[int, CancelCallback] = {}
        self._next_callback_id = 0

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    def cancel(self, reason: CancelReason = CancelReason.ABORTED) -> bool:
        """キャンセルする。2 回目以降は何もせず False を返す。"""
        if self._reason is not None:
            return False
        self._reason = reason
        self._event.set()
        callbacks = list(self._callbacks.values())
        self._callbacks.clear()
        for callback in callbacks:
            try:
                callback(reason)
            except Exception:
                _LOG.exception("Cancellation callback failed: reason=%s", reason.value)
        return True

    def add_callback(self, callback: CancelCallback) -> Callable[[], None]:
        """キャンセル時の callback を登録し、登録解除関数を返す。"""
        if self._reason is not None:
            callback(self._reason)
            return _noop

        callback_id = self._next_callback_id
        self._next_callback_id += 1
        self._callbacks[callback_id] = callback

        def unsubscribe() -> None:
            self._callbacks.pop(callback_id, None)

        return unsubscribe

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise OperationCancelledError(self._reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """awaitable とキャンセルを競争させ、先にキャンセルされたら中断する。

        中断時は実行中の awaitable をキャンセルし、後始末が終わるまで待ってから
        OperationCancelledError を送出する。
        """
        if self._reason is not None:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelledError(self._reason)

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        interrupted = False
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                interrupted = True
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if interrupted and self._reason is not None:
            raise OperationCancelledError(self._reason)
        return task.result()

    def link(self) -> LinkedCancellationToken:
        """このトークンに連動する子トークンを返す。"""
        return LinkedCancellationToken(self)

    @classmethod
    def merge(cls, *parents: CancellationToken | None) -> LinkedCancellationToken:
        """いずれかの親がキャンセルされると発火するトークンを返す。"""
        return LinkedCancellationToken(*parents)


class LinkedCancellationToken(CancellationToken):
    """親トークンに連動するトークン。close() で親への購読を解除する。"""

    def __init__(self, *parents: CancellationToken | None) -> None:
        """親ごとに callback を登録する。既にキャンセル済みの親があれば即時発火する。"""
        super().__init__()
        self._unsubscribers: list[Callable[[], None]] = []
        for parent in parents:
            if parent is None:
                continue
            self._unsubscribers.append(parent.add_callback(self.cancel))

    def close(self) -> None:
        """親トークンへの購読をすべて解除する。"""
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()

    def __enter__(self) -> LinkedCancellationToken:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()


class DeadlineGuard:
    """全体期限と無通信期限を監視し、超過時にトークンを TIMEOUT でキャンセルする。"""

    def __init__(
        self,
        token: CancellationToken,
        *,
        overall_seconds: float | None,
        idle_seconds: float | None = None,
    ) -> None:
        """監視対象トークンと各期限秒数を受け取る。None の期限は監視しない。"""
        self._token = token
        self._overall_seconds = overall_seconds
        self._idle_seconds = idle_seconds
        self._overall_handle: asyncio.TimerHandle | None = None
        self._idle_handle: asyncio.TimerHandle | None = None

    def start(self) -> None:
        """イベントループ上でタイマーを開始する。"""
        loop = asyncio.get_running_loop()
        if self._overall_seconds is not None:
            self._overall_handle = loop.call_later(
                self._overall_seconds, self._expire, "overall"
            )
        self.touch()

    def touch(self) -> None:
        """無通信期限をリセットする。チャンク受信のたびに呼ぶ。"""
        if self._idle_seconds is None:
            return
        if self._idle_handle is not None:
            self._idle_handle.cancel()
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(self._idle_seconds, self._expire, "idle")

    def close(self) -> None:
        for handle in (self._overall_handle, self._idle_handle):
            if handle is not None:
                handle.cancel()
        self._overall_handle = None
        self._idle_handle = None

    def _expire(self, kind: str) -> None:
        if self._token.cancel(CancelReason.TIMEOUT):
            _LOG.warning("Deadline exceeded: kind=%s", kind)

    def __enter__(self) -> DeadlineGuard:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()


async def shielded(coroutine: Coroutine[Any, Any, T]) -> T:
    """呼び出し側がキャンセルされても coroutine を最後まで実行させる。

    後始末処理を既にキャンセルされたコンテキストから起動するために使う。
    """
    task = asyncio.ensure_future(coroutine)
    _DETACHED_TASKS.add(task)
    task.add_done_callback(_DETACHED_TASKS.discard)
    return await asyncio.shield(task)


def _noop() -> None:
    return None
