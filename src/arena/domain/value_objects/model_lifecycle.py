"""モデルのライフサイクル操作で使う値オブジェクト。"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class LifecycleAction(str, Enum):
    """モデルに対する操作種別。"""

    START = "start"
    STOP = "stop"


class StartOutcome(str, Enum):
    """start 操作の終端結果。"""

    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    ABORTED = "aborted"


class StopOutcome(str, Enum):
    """stop 操作の終端結果。失敗も例外ではなく値で表す。"""

    SKIPPED = "skipped"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class LifecycleRequest:
    """1件のモデル操作要求。"""

    model: str
    action: LifecycleAction

    def __post_init__(self) -> None:
        """モデル名の最小整合性を検証する。"""
        if not self.model.strip():
            raise ValueError("model は空にできません。")


@dataclass(frozen=True, slots=True)
class StartResult:
    """start 操作の結果と診断テキスト。"""

    model: str
    outcome: StartOutcome
    diagnostic: str = ""

    @property
    def available(self) -> bool:
        """モデルが利用可能になったかを返す。"""
        return self.outcome is StartOutcome.AVAILABLE


@dataclass(frozen=True, slots=True)
class PullResult:
    """外部 pull コマンドの実行結果。"""

    succeeded: bool
    aborted: bool = False
    output: str = ""


def normalize_model_name(model: object) -> str:
    """リクエスト由来のモデル名を trim して返す。文字列以外は空文字とする。"""
    if not isinstance(model, str):
        return ""
    return model.strip()
