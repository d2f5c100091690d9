"""HTTP API の入出力スキーマ。"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class _CamelCaseModel(BaseModel):
    """camelCase のキーと snake_case のフィールド名を両方受け付ける。"""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())


class HealthResponse(BaseModel):
    """ヘルスチェックレスポンス。"""

    status: str = "ok"


class ErrorResponse(BaseModel):
    """API エラーレスポンス。snippet は judge 出力の検証失敗時のみ付く。"""

    error: str
    snippet: str | None = None


class ChatMessageBody(BaseModel):
    role: Literal["system", "user", "assistant"] = "user"
    content: str = ""


class CompareRequestBody(_CamelCaseModel):
    """比較チャットのリクエスト。"""

    model: str = ""
    messages: list[ChatMessageBody] = Field(default_factory=list)
    stream: bool = True


class CompareTextResponse(BaseModel):
    text: str


class HistoryTurnBody(BaseModel):
    """続きから再開する際にクライアントが送る既存ターン。"""

    speaker: Literal["A", "B"]
    content: str
    turn: int | None = Field(default=None, ge=1)


class ClashRequestBody(_CamelCaseModel):
    """2 モデル対話のリクエスト。

    maxRounds / startFromTurn は正の数として解釈できない場合に既定値を使うため、
    型を緩く受け取り、ルート側で解決する。
    """

    model_a: str = Field(default="", alias="modelA")
    model_b: str = Field(default="", alias="modelB")
    system_prompt: str = Field(default="", alias="systemPrompt")
    user_prompt: str = Field(default="", alias="userPrompt")
    max_rounds: Any = Field(default=None, alias="maxRounds")
    start_from_turn: Any = Field(default=None, alias="startFromTurn")
    history: list[HistoryTurnBody] = Field(default_factory=list)


class JudgeRequestBody(_CamelCaseModel):
    """judge 採点のリクエスト。"""

    model: str = ""
    system_prompt: str = Field(default="", alias="systemPrompt")
    user_prompt: str = Field(default="", alias="userPrompt")


class JudgeResponse(BaseModel):
    result: dict[str, Any]


class LifecycleRequestBody(_CamelCaseModel):
    """モデル start / stop のリクエスト。値の検証はルート側で行う。"""

    action: str = ""
    model: str = ""


class StartModelResponse(BaseModel):
    available: bool
    model: str
    outcome: str
    error: str | None = None


class StopModelResponse(BaseModel):
    stopped: bool
    model: str
    outcome: str


class ModelInventoryResponse(BaseModel):
    """接続先ホストの pull 済み・稼働中モデル一覧。"""

    host: str
    models: list[str]
    running: list[str]
