"""Judge 評価結果の値オブジェクト。"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal

SCORE_KEYS: tuple[str, ...] = ("relevance", "clarity", "depth", "engagement", "creativity")
SCORE_MIN = 1.0
SCORE_MAX = 10.0

WinnerLabel = Literal["Model A", "Model B", "Tie"]
WINNER_LABELS: tuple[WinnerLabel, ...] = ("Model A", "Model B", "Tie")


@dataclass(frozen=True, slots=True)
class ScoreBreakdown:
    """1 モデル分の 5 観点スコア。"""

    relevance: float
    clarity: float
    depth: float
    engagement: float
    creativity: float

    def __post_init__(self) -> None:
        """各スコアが 1-10 範囲にあることを検証する。"""
        for key in SCORE_KEYS:
            score = getattr(self, key)
            if not math.isfinite(score) or not SCORE_MIN <= score <= SCORE_MAX:
                raise ValueError(f"{key} must be between 1 and 10")

    def to_payload(self) -> dict[str, float]:
        return {key: getattr(self, key) for key in SCORE_KEYS}


@dataclass(frozen=True, slots=True)
class JudgeResult:
    """Judge モデルの評価を検証・正規化した結果。"""

    model_a: ScoreBreakdown
    model_b: ScoreBreakdown
    winner: WinnerLabel
    text_feedback: str
    thinking_steps: str | None = None

    def __post_init__(self) -> None:
        """winner と feedback の整合性を検証する。"""
        if self.winner not in WINNER_LABELS:
            raise ValueError('winner must be "Model A", "Model B", or "Tie"')
        if not self.text_feedback.strip():
            raise ValueError("text_feedback must be a non-empty string")

    def to_payload(self) -> dict[str, object]:
        """API レスポンス向けの dict を返す。"""
        payload: dict[str, object] = {
            "modelA": self.model_a.to_payload(),
            "modelB": self.model_b.to_payload(),
            "winner": self.winner,
            "text_feedback": self.text_feedback,
        }
        if self.thinking_steps:
            payload["thinking_steps"] = self.thinking_steps
        return payload
