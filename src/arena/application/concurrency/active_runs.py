"""同一モデルへの生成を 1 本に制限する latest-wins レジストリ。"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field

from arena.application.concurrency.cancellation import CancellationToken, CancelReason

_LOG = logging.getLogger(__name__)

RunKey = tuple[str, str]


@dataclass(eq=False, slots=True)
class RunHandle:
    """実行中ランのキャンセルハンドル。同一性で比較する。"""

    key: RunKey
    run_id: int
    token: CancellationToken = field(default_factory=CancellationToken)


class ActiveRunRegistry:
    """(ホスト, モデル) ごとに最新ランのハンドルだけを保持する。

    プロセス全体で 1 インスタンスを共有し、エントリは所有ランの終了時に削除する。
    """

    def __init__(self) -> None:
        """空のレジストリを初期化する。"""
        self._runs: dict[RunKey, RunHandle] = {}
        self._run_ids = itertools.count(1)

    def begin(self, key: RunKey) -> RunHandle:
        """新しいランを登録し、同じキーの既存ランを SUPERSEDED でキャンセルする。"""
        handle = RunHandle(key=key, run_id=next(self._run_ids))
        previous = self._runs.get(key)
        self._runs[key] = handle
        if previous is not None:
            _LOG.info(
                "Superseding active run: host=%s model=%s previous_run=%s new_run=%s",
                key[0],
                key[1],
                previous.run_id,
                handle.run_id,
            )
            previous.token.cancel(CancelReason.SUPERSEDED)
        return handle

    def finish(self, handle: RunHandle) -> bool:
        """handle がまだ最新ならエントリを削除する。新しいランのエントリは残す。"""
        if self._runs.get(handle.key) is not handle:
            return False
        del self._runs[handle.key]
        return True

    def current(self, key: RunKey) -> RunHandle | None:
        return self._runs.get(key)

    def cancel_all(self, reason: CancelReason = CancelReason.SHUTDOWN) -> int:
        """全ランをキャンセルし、キャンセルした件数を返す。"""
        handles = list(self._runs.values())
        self._runs.clear()
        for handle in handles:
            handle.token.cancel(reason)
        return len(handles)

    def __len__(self) -> int:
        return len(self._runs)
