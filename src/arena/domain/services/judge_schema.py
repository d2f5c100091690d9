"""Judge モデル出力の検証と正規化を提供する。

モデルは JSON 形式の指示に従うとは限らないため、出力は信頼できない入力として
扱い、スキーマ違反は部分採用せず全体を拒否する。
"""

from __future__ import annotations

import json
import math
from collections.abc import Callable, Mapping, Sequence

from arena.domain.value_objects.judge import (
    SCORE_KEYS,
    SCORE_MAX,
    SCORE_MIN,
    JudgeResult,
    ScoreBreakdown,
    WinnerLabel,
)

SNIPPET_LIMIT = 2000

_WINNER_ALIASES: Mapping[str, WinnerLabel] = {
    "a": "Model A",
    "model a": "Model A",
    "model_a": "Model A",
    "modela": "Model A",
    "b": "Model B",
    "model b": "Model B",
    "model_b": "Model B",
    "modelb": "Model B",
    "tie": "Tie",
    "draw": "Tie",
}


class JudgeOutputError(ValueError):
    """Judge 出力のスキーマ違反。snippet に問題の生テキストを保持する。"""

    def __init__(self, message: str, *, snippet: str = "") -> None:
        super().__init__(message)
        self.snippet = snippet[:SNIPPET_LIMIT]


ScoreSource = Callable[[Mapping[str, object], str, str], object | None]


def _direct_camel_case(
    candidate: Mapping[str, object], camel_key: str, snake_key: str
) -> object | None:
    del snake_key
    return candidate.get(camel_key) or None


def _nested_scores(
    candidate: Mapping[str, object], camel_key: str, snake_key: str
) -> object | None:
    scores = candidate.get("scores")
    if not isinstance(scores, Mapping):
        return None
    return scores.get(snake_key) or scores.get(camel_key) or None


def _top_level_snake_case(
    candidate: Mapping[str, object], camel_key: str, snake_key: str
) -> object | None:
    del camel_key
    return candidate.get(snake_key) or None


# 先頭から順に試し、最初に値を返した戦略を採用する。
SCORE_SOURCES: tuple[ScoreSource, ...] = (
    _direct_camel_case,
    _nested_scores,
    _top_level_snake_case,
)


def parse_judge_envelope(body_text: str) -> str:
    """チャット API の非ストリーム応答本文から message.content を取り出す。"""
    try:
        envelope = json.loads(body_text)
    except json.JSONDecodeError as exc:
        raise JudgeOutputError(
            "Invalid upstream response", snippet=body_text or "No JSON response"
        ) from exc
    if not isinstance(envelope, Mapping):
        raise JudgeOutputError("Invalid upstream response", snippet=body_text)

    message = envelope.get("message")
    if not isinstance(message, Mapping):
        raise JudgeOutputError(
            "Missing message in response",
            snippet=json.dumps(envelope, ensure_ascii=False),
        )
    content = message.get("content")
    if not isinstance(content, str):
        raise JudgeOutputError(
            "Invalid message content",
            snippet=json.dumps(message, ensure_ascii=False),
        )
    return content


def parse_judge_content(content: str) -> JudgeResult:
    """モデル回答テキストを JSON として読み、JudgeResult に変換する。"""
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise JudgeOutputError(str(exc), snippet=content) from exc
    try:
        return validate_judge_payload(parsed)
    except JudgeOutputError as exc:
        raise JudgeOutputError(str(exc), snippet=content) from exc


def validate_judge_payload(payload: object) -> JudgeResult:
    """パース済み payload を検証して JudgeResult を返す。"""
    if not isinstance(payload, Mapping):
        raise JudgeOutputError("Model response is not an object")

    model_a = _validate_score_breakdown(
        _resolve_scores(payload, camel_key="modelA", snake_key="model_a"),
        label="Model A",
    )
    model_b = _validate_score_breakdown(
        _resolve_scores(payload, camel_key="modelB", snake_key="model_b"),
        label="Model B",
    )
    winner = _normalize_winner(payload.get("winner"))
    text_feedback = _normalize_feedback(_first_present(payload, "text_feedback", "textFeedback"))
    thinking_steps = _normalize_thinking_steps(
        _first_present(payload, "thinking_steps", "thinkingSteps")
    )

    return JudgeResult(
        model_a=model_a,
        model_b=model_b,
        winner=winner,
        text_feedback=text_feedback,
        thinking_steps=thinking_steps,
    )


def _resolve_scores(
    payload: Mapping[str, object], *, camel_key: str, snake_key: str
) -> object | None:
    for source in SCORE_SOURCES:
        value = source(payload, camel_key, snake_key)
        if value is not None:
            return value
    return None


def _validate_score_breakdown(value: object, *, label: str) -> ScoreBreakdown:
    if not isinstance(value, Mapping):
        raise JudgeOutputError(f"{label} scores must be an object")
    scores = {key: _normalize_score(value.get(key), field=f"{label}.{key}") for key in SCORE_KEYS}
    return ScoreBreakdown(**scores)


def _normalize_score(value: object, *, field: str) -> float:
    numeric: float | None = None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value.strip())
        except ValueError:
            numeric = None

    if numeric is None or not math.isfinite(numeric):
        raise JudgeOutputError(f"Invalid score for {field}")
    if not SCORE_MIN <= numeric <= SCORE_MAX:
        raise JudgeOutputError(f"{field} must be between 1 and 10")
    return numeric


def _normalize_winner(value: object) -> WinnerLabel:
    if not isinstance(value, str) or not value.strip():
        raise JudgeOutputError("winner must be a non-empty string")
    winner = _WINNER_ALIASES.get(value.strip().lower())
    if winner is None:
        raise JudgeOutputError('winner must be "Model A", "Model B", or "Tie"')
    return winner


def _normalize_feedback(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise JudgeOutputError("text_feedback must be a non-empty string")
    return value.strip()


def _normalize_thinking_steps(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, Sequence) and all(isinstance(step, str) for step in value):
        steps = [step.strip() for step in value if step.strip()]
        return "\n\n".join(steps) or None
    raise JudgeOutputError("thinking_steps must be a string or array of strings")


def _first_present(payload: Mapping[str, object], *keys: str) -> object | None:
    for key in keys:
        if key in payload:
            return payload[key]
    return None
