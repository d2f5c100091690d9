import json

import pytest

from arena.adapters.outbound.in_memory_components import InMemoryModelHost, ScriptedChatAdapter
from arena.application.concurrency.cancellation import CancellationToken
from arena.application.use_cases.judge_invocation import (
    JUDGE_FORMAT_INSTRUCTIONS,
    JudgeInvocationUseCase,
    JudgeRequest,
)
from arena.application.use_cases.model_lifecycle import ModelLifecycleUseCase
from arena.domain.services.judge_schema import JudgeOutputError


def _envelope(content: str) -> str:
    return json.dumps({"message": {"role": "assistant", "content": content}, "done": True})


def _judge_content() -> str:
    scores = {"relevance": 8, "clarity": 7, "depth": 6, "engagement": 9, "creativity": 5}
    return json.dumps(
        {
            "modelA": scores,
            "modelB": {**scores, "depth": 9},
            "winner": "model b",
            "text_feedback": "B の方が具体的だった。",
            "thinking_steps": ["論点を整理", "具体性を比較"],
        }
    )


def _build_use_case(host: InMemoryModelHost, chat: ScriptedChatAdapter) -> JudgeInvocationUseCase:
    return JudgeInvocationUseCase(
        lifecycle=ModelLifecycleUseCase(registry=host, process=host),
        chat=chat,
    )


def _request() -> JudgeRequest:
    return JudgeRequest(
        model="judge",
        system_prompt="公平な審査員として採点してください。",
        user_prompt="A: 朝型です\nB: 夜型です",
    )


@pytest.mark.asyncio
async def test_evaluate_returns_validated_result_and_stops_model() -> None:
    host = InMemoryModelHost()
    chat = ScriptedChatAdapter(completions={"judge": _envelope(_judge_content())})

    result = await _build_use_case(host, chat).evaluate(_request(), cancellation=CancellationToken())

    assert result.winner == "Model B"
    assert result.model_b.depth == 9.0
    assert result.thinking_steps == "論点を整理\n\n具体性を比較"
    assert host.pull_calls == ["judge"]
    assert host.stop_calls == ["judge"]


@pytest.mark.asyncio
async def test_evaluate_sends_single_json_request() -> None:
    host = InMemoryModelHost(pulled={"judge"})
    chat = ScriptedChatAdapter(completions={"judge": _envelope(_judge_content())})

    await _build_use_case(host, chat).evaluate(_request(), cancellation=CancellationToken())

    (call,) = chat.calls
    assert call.stream is False
    assert call.response_format == "json"
    assert call.options == {"temperature": 0.2}
    assert call.messages[0].role == "system"
    assert call.messages[0].content.endswith(JUDGE_FORMAT_INSTRUCTIONS)
    assert call.messages[1].content == "A: 朝型です\nB: 夜型です"


@pytest.mark.asyncio
async def test_invalid_output_raises_with_snippet_and_still_stops_model() -> None:
    host = InMemoryModelHost(pulled={"judge"})
    bad_content = json.dumps({"modelA": {}, "winner": "Model A"})
    chat = ScriptedChatAdapter(completions={"judge": _envelope(bad_content)})

    with pytest.raises(JudgeOutputError) as exc_info:
        await _build_use_case(host, chat).evaluate(_request(), cancellation=CancellationToken())

    assert exc_info.value.snippet == bad_content
    assert host.stop_calls == ["judge"]


def test_request_requires_model_and_prompts() -> None:
    with pytest.raises(ValueError, match="Model is required."):
        JudgeRequest(model="", system_prompt="s", user_prompt="u")
    with pytest.raises(ValueError, match="System and user prompts are required."):
        JudgeRequest(model="judge", system_prompt="s", user_prompt=" ")
