"""対話ターンごとの送信コンテキストを組み立てる。"""

from __future__ import annotations

from collections.abc import Sequence

from arena.domain.entities.dialogue import ChatMessage, ConversationTurn, Speaker


def build_turn_messages(
    *,
    system_prompt: str,
    user_prompt: str,
    history: Sequence[ConversationTurn],
    speaker: Speaker,
) -> tuple[ChatMessage, ...]:
    """speaker 視点のメッセージ列を返す。

    自分の過去応答は assistant、相手の応答は user として並べるため、
    各モデルは常に相手と会話している文脈を受け取る。
    """
    messages = [
        ChatMessage(role="system", content=system_prompt),
        ChatMessage(role="user", content=user_prompt),
    ]
    messages.extend(
        ChatMessage(role=turn.role_for(speaker), content=turn.content) for turn in history
    )
    return tuple(messages)


def total_turns(max_rounds: int) -> int:
    """1 ラウンドで両話者が 1 回ずつ応答するため、総ターン数は 2 倍になる。"""
    if max_rounds < 1:
        raise ValueError("max_rounds は 1 以上である必要があります。")
    return max_rounds * 2
