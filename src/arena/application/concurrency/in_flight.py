"""キー単位で実行中の非同期処理を共有するレジストリ。"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class InFlightRegistry(Generic[T]):
    """同一キーの処理を 1 本に束ね、同時呼び出し側へ同じ結果を返す。

    エントリは処理の完了時 (成功・失敗とも) に、作成したタスク自身が削除する。
    """

    def __init__(self) -> None:
        """空のレジストリを初期化する。"""
        self._pending: dict[str, asyncio.Task[T]] = {}

    def run(self, key: str, factory: Callable[[], Coroutine[Any, Any, T]]) -> asyncio.Task[T]:
        """key の処理が実行中ならそのタスクを、なければ factory から新規タスクを返す。"""
        existing = self._pending.get(key)
        if existing is not None:
            return existing

        task = asyncio.ensure_future(factory())
        self._pending[key] = task
        task.add_done_callback(lambda done: self._discard(key, done))
        return task

    async def join(self, key: str, factory: Callable[[], Coroutine[Any, Any, T]]) -> T:
        """共有タスクの完了を待つ。呼び出し側のキャンセルは共有タスクへ波及させない。"""
        return await asyncio.shield(self.run(key, factory))

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def _discard(self, key: str, task: asyncio.Task[T]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
