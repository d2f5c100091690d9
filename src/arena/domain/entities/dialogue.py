"""対話実行で扱うメッセージ・ターン・ストリームイベント。"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal

ChatRole = Literal["system", "user", "assistant"]
CHAT_ROLES: frozenset[str] = frozenset({"system", "user", "assistant"})


class Speaker(str, Enum):
    """対話の話者。A が奇数ターン、B が偶数ターンを担当する。"""

    A = "A"
    B = "B"

    @classmethod
    def for_turn(cls, turn_number: int) -> Speaker:
        """ターン番号から話者を返す。"""
        if turn_number < 1:
            raise ValueError("turn_number は 1 以上である必要があります。")
        return cls.A if turn_number % 2 == 1 else cls.B


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """チャット API へ送る 1 メッセージ。"""

    role: ChatRole
    content: str

    def __post_init__(self) -> None:
        """role が既知の値であることを検証する。"""
        if self.role not in CHAT_ROLES:
            raise ValueError(f"role が不正です: {self.role}")

    def to_payload(self) -> dict[str, str]:
        """上流 API 向けの dict を返す。"""
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    """話者が 1 回応答した内容。role は参照する側の視点で決まる。"""

    speaker: Speaker
    content: str
    turn_number: int | None = None

    def __post_init__(self) -> None:
        """空応答はターン履歴に含めない。"""
        if not self.content.strip():
            raise ValueError("content は空にできません。")

    def role_for(self, viewer: Speaker) -> ChatRole:
        """viewer から見たこのターンの role を返す。"""
        return "assistant" if self.speaker is viewer else "user"


@dataclass(frozen=True, slots=True)
class TurnStart:
    """ターン開始イベント。"""

    speaker: Speaker
    turn: int

    def to_payload(self) -> dict[str, object]:
        return {"type": "turn-start", "speaker": self.speaker.value, "turn": self.turn}


@dataclass(frozen=True, slots=True)
class Delta:
    """ターン中の増分テキストイベント。"""

    speaker: Speaker
    turn: int
    content: str

    def to_payload(self) -> dict[str, object]:
        return {
            "type": "delta",
            "speaker": self.speaker.value,
            "turn": self.turn,
            "content": self.content,
        }


@dataclass(frozen=True, slots=True)
class TurnEnd:
    """ターン終了イベント。"""

    speaker: Speaker
    turn: int

    def to_payload(self) -> dict[str, object]:
        return {"type": "turn-end", "speaker": self.speaker.value, "turn": self.turn}


@dataclass(frozen=True, slots=True)
class Complete:
    """全ターン完了イベント。"""

    def to_payload(self) -> dict[str, object]:
        return {"type": "complete"}


@dataclass(frozen=True, slots=True)
class StreamError:
    """実行途中の失敗を通知するイベント。"""

    message: str

    def to_payload(self) -> dict[str, object]:
        return {"type": "error", "error": self.message}


StreamEvent = TurnStart | Delta | TurnEnd | Complete | StreamError
