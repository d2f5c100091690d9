"""モデル配信ホストの登録済みモデル照会の契約。"""

from __future__ import annotations

from typing import Protocol


class ModelRegistryPort(Protocol):
    """pull 済み・稼働中モデル名を照会する抽象ポート。"""

    def list_pulled_models(self) -> frozenset[str]:
        """pull 済みモデル名を返す。照会失敗時は空集合を返す。"""

    def list_running_models(self) -> frozenset[str]:
        """メモリ上で稼働中のモデル名を返す。照会失敗時は空集合を返す。"""

    def is_pulled(self, model: str) -> bool:
        """モデルが pull 済みかを毎回照会して返す。"""

    def is_running(self, model: str) -> bool:
        """モデルが稼働中かを毎回照会して返す。クラウド配信モデルは検出できない。"""
