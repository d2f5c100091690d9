"""LLM-as-judge で対話トランスクリプトを採点するユースケース。"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from arena.application.concurrency.cancellation import CancellationToken
from arena.application.use_cases.model_lifecycle import (
    ModelLifecycleUseCase,
    ModelReleaseGuard,
    start_failure_error,
)
from arena.domain.entities.dialogue import ChatMessage
from arena.domain.services.judge_schema import parse_judge_content, parse_judge_envelope
from arena.domain.value_objects.judge import JudgeResult
from arena.domain.value_objects.model_lifecycle import normalize_model_name
from arena.ports.outbound.chat_completion_port import ChatCompletionPort

_LOG = logging.getLogger(__name__)

JUDGE_FORMAT_INSTRUCTIONS = """

You MUST respond with a valid JSON object matching this EXACT structure:
{
  "modelA": {
    "relevance": <number 1-10>,
    "clarity": <number 1-10>,
    "depth": <number 1-10>,
    "engagement": <number 1-10>,
    "creativity": <number 1-10>
  },
  "modelB": {
    "relevance": <number 1-10>,
    "clarity": <number 1-10>,
    "depth": <number 1-10>,
    "engagement": <number 1-10>,
    "creativity": <number 1-10>
  },
  "winner": "<Model A|Model B|Tie>",
  "text_feedback": "<your feedback text>",
  "thinking_steps": ["<optional step 1>", "<optional step 2>"]
}

CRITICAL: Use these EXACT key names: "modelA", "modelB" (camelCase). Return a JSON object only, NO markdown, NO extra text."""


@dataclass(frozen=True, slots=True)
class JudgeRequest:
    """採点要求。user_prompt は描画済みトランスクリプト。"""

    model: str
    system_prompt: str
    user_prompt: str

    def __post_init__(self) -> None:
        """必須項目を検証する。"""
        if not normalize_model_name(self.model):
            raise ValueError("Model is required.")
        if not self.system_prompt.strip() or not self.user_prompt.strip():
            raise ValueError("System and user prompts are required.")


class JudgeInvocationUseCase:
    """judge モデルを起動し、1 回の JSON 応答を検証して返す。"""

    def __init__(
        self,
        *,
        lifecycle: ModelLifecycleUseCase,
        chat: ChatCompletionPort,
        temperature: float = 0.2,
    ) -> None:
        """依存ポートと生成温度を受け取る。"""
        self._lifecycle = lifecycle
        self._chat = chat
        self._temperature = temperature

    async def evaluate(
        self,
        request: JudgeRequest,
        *,
        cancellation: CancellationToken,
    ) -> JudgeResult:
        """採点を実行する。モデルはどの終了経路でも停止する。

        Raises:
            OperationCancelledError: 呼び出し元のキャンセル、または期限超過。
            ModelUnavailableError: モデルの pull に失敗した。
            ChatRequestError: 上流 API が失敗した。
            JudgeOutputError: 応答がスキーマに適合しない。
        """
        model = normalize_model_name(request.model)
        release = ModelReleaseGuard(self._lifecycle)
        release.mark_in_use(model)
        try:
            start_result = await self._lifecycle.start(model, cancellation=cancellation)
            if not start_result.available:
                raise start_failure_error(start_result)

            body = await self._chat.complete_chat(
                model=model,
                messages=(
                    ChatMessage(
                        role="system",
                        content=request.system_prompt + JUDGE_FORMAT_INSTRUCTIONS,
                    ),
                    ChatMessage(role="user", content=request.user_prompt),
                ),
                cancellation=cancellation,
                response_format="json",
                options={"temperature": self._temperature},
            )
            content = parse_judge_envelope(body)
            _LOG.debug("Judge message content: %s", content[:4000])
            return parse_judge_content(content)
        finally:
            await release.release()
