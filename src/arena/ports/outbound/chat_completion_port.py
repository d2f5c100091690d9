"""チャット補完 API 呼び出しの契約。"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Protocol

from arena.application.concurrency.cancellation import CancellationToken
from arena.domain.entities.dialogue import ChatMessage


class ChatRequestError(RuntimeError):
    """上流チャット API の失敗 (非 2xx 応答・帯域内エラー・通信失敗) を表す例外。"""


class ChatCompletionPort(Protocol):
    """モデル配信ホストへ 1 回のチャット要求を行う抽象ポート。"""

    def host_identity(self) -> str:
        """接続先ホストを識別する文字列を返す。実行中ランのキーに使う。"""

    def stream_chat(
        self,
        *,
        model: str,
        messages: Sequence[ChatMessage],
        cancellation: CancellationToken,
        options: Mapping[str, object] | None = None,
    ) -> AsyncIterator[str]:
        """テキスト増分を順に返す。再開不可で、再試行には新しい呼び出しが必要。"""

    async def complete_chat(
        self,
        *,
        model: str,
        messages: Sequence[ChatMessage],
        cancellation: CancellationToken,
        response_format: str | None = None,
        options: Mapping[str, object] | None = None,
    ) -> str:
        """非ストリーム応答の本文テキストをそのまま返す。"""
