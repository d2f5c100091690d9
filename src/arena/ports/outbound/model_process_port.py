"""モデルの pull / stop を実行する外部プロセス操作の契約。"""

from __future__ import annotations

from typing import Protocol

from arena.application.concurrency.cancellation import CancellationToken
from arena.domain.value_objects.model_lifecycle import PullResult


class ModelProcessPort(Protocol):
    """モデル配信ホストのプロセス管理コマンドを実行する抽象ポート。"""

    async def pull_model(self, model: str, cancellation: CancellationToken) -> PullResult:
        """モデルを取得・ロードする。キャンセル時は子プロセスを終了して aborted を返す。"""

    def stop_model(self, model: str) -> bool:
        """モデルをメモリから降ろす。成功時に True を返し、例外は送出しない。"""
