"""FastAPI ベースの LLM アリーナ API。"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from arena.adapters.inbound.http.disconnect import ClientDisconnectWatcher, watch_client_disconnect
from arena.adapters.inbound.http.schemas import (
    ClashRequestBody,
    CompareRequestBody,
    CompareTextResponse,
    ErrorResponse,
    HealthResponse,
    JudgeRequestBody,
    JudgeResponse,
    LifecycleRequestBody,
    ModelInventoryResponse,
    StartModelResponse,
    StopModelResponse,
)
from arena.adapters.outbound.ollama_chat import OllamaChatAdapter
from arena.adapters.outbound.ollama_cli import (
    OllamaCliModelProcessAdapter,
    OllamaCliModelRegistryAdapter,
)
from arena.adapters.outbound.ollama_settings import OllamaConfigurationError
from arena.application.concurrency.cancellation import CancelReason, OperationCancelledError
from arena.application.use_cases.compare_stream import (
    CompareRequest,
    CompareStreamUseCase,
    DeltaStream,
)
from arena.application.use_cases.dialogue_orchestration import (
    DEFAULT_MAX_ROUNDS,
    DialogueOrchestrator,
    DialogueRequest,
    DialogueRun,
)
from arena.application.use_cases.judge_invocation import JudgeInvocationUseCase, JudgeRequest
from arena.application.use_cases.model_lifecycle import (
    ModelLifecycleUseCase,
    ModelUnavailableError,
)
from arena.domain.entities.dialogue import ChatMessage, ConversationTurn, Speaker
from arena.domain.services.judge_schema import JudgeOutputError
from arena.domain.value_objects.model_lifecycle import (
    LifecycleAction,
    LifecycleRequest,
    StartOutcome,
    StopOutcome,
    normalize_model_name,
)
from arena.ports.outbound.chat_completion_port import ChatCompletionPort, ChatRequestError
from arena.ports.outbound.model_process_port import ModelProcessPort
from arena.ports.outbound.model_registry_port import ModelRegistryPort

_LOG = logging.getLogger(__name__)

HTTP_499_CLIENT_CLOSED_REQUEST = 499
_NDJSON_MEDIA_TYPE = "application/x-ndjson"


@dataclass(frozen=True, slots=True)
class ArenaServices:
    """アプリが共有するユースケースとレジストリ。create_app ごとに 1 組作られる。"""

    chat: ChatCompletionPort
    lifecycle: ModelLifecycleUseCase
    compare: CompareStreamUseCase
    orchestrator: DialogueOrchestrator
    judge: JudgeInvocationUseCase

    @classmethod
    def build(
        cls,
        *,
        registry: ModelRegistryPort,
        process: ModelProcessPort,
        chat: ChatCompletionPort,
    ) -> ArenaServices:
        lifecycle = ModelLifecycleUseCase(registry=registry, process=process)
        return cls(
            chat=chat,
            lifecycle=lifecycle,
            compare=CompareStreamUseCase(lifecycle=lifecycle, chat=chat),
            orchestrator=DialogueOrchestrator(lifecycle=lifecycle, chat=chat),
            judge=JudgeInvocationUseCase(lifecycle=lifecycle, chat=chat),
        )


def create_app(*, services: ArenaServices | None = None) -> FastAPI:
    """アリーナ API アプリを構築する。"""
    _load_runtime_env()
    resolved_services = services or _build_default_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        cancelled = resolved_services.compare.active_runs.cancel_all(CancelReason.SHUTDOWN)
        if cancelled:
            _LOG.info("Cancelled %s active compare run(s) on shutdown", cancelled)
        await resolved_services.lifecycle.stop_all(running_only=True)

    app = FastAPI(
        title="LLM Arena API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = resolved_services
    _register_exception_handlers(app)
    _register_routes(app)
    return app


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        return _error_response(status.HTTP_400_BAD_REQUEST, _validation_message(exc))


def _register_routes(app: FastAPI) -> None:
    api = APIRouter(prefix="/api")
    error_responses = {
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        499: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    }

    @api.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @api.post("/compare", response_model=CompareTextResponse, responses=error_responses)
    async def compare(
        body: CompareRequestBody,
        request: Request,
        x_api_key: str | None = Header(default=None),
    ):
        _require_api_key(x_api_key)
        services: ArenaServices = app.state.services
        try:
            compare_request = CompareRequest.build(
                model=body.model,
                messages=[
                    ChatMessage(role=message.role, content=message.content)
                    for message in body.messages
                ],
            )
        except ValueError as exc:
            return _error_response(status.HTTP_400_BAD_REQUEST, str(exc))

        if not body.stream:
            try:
                async with watch_client_disconnect(request) as token:
                    text = await services.compare.complete(compare_request, cancellation=token)
            except Exception as exc:
                return _failure_response(exc, context="compare")
            return CompareTextResponse(text=text)

        watcher = ClientDisconnectWatcher(request)
        watcher.start()
        try:
            stream = await services.compare.open_stream(
                compare_request,
                cancellation=watcher.token,
            )
        except Exception as exc:
            watcher.close()
            return _failure_response(exc, context="compare")
        return StreamingResponse(
            _compare_text_chunks(stream, watcher, model=compare_request.model),
            media_type="text/plain; charset=utf-8",
        )

    @api.post("/clash", responses=error_responses)
    async def clash(
        body: ClashRequestBody,
        request: Request,
        x_api_key: str | None = Header(default=None),
    ):
        _require_api_key(x_api_key)
        services: ArenaServices = app.state.services
        try:
            dialogue_request = _to_dialogue_request(body)
        except ValueError as exc:
            return _error_response(status.HTTP_400_BAD_REQUEST, str(exc))

        watcher = ClientDisconnectWatcher(request)
        watcher.start()
        dialogue = services.orchestrator.create_run(dialogue_request, cancellation=watcher.token)
        try:
            await dialogue.prepare()
        except Exception as exc:
            watcher.close()
            return _failure_response(exc, context="clash")
        return StreamingResponse(
            _clash_event_lines(dialogue, watcher),
            media_type=_NDJSON_MEDIA_TYPE,
        )

    @api.post("/judge", response_model=JudgeResponse, responses=error_responses)
    async def judge(
        body: JudgeRequestBody,
        request: Request,
        x_api_key: str | None = Header(default=None),
    ):
        _require_api_key(x_api_key)
        services: ArenaServices = app.state.services
        try:
            judge_request = JudgeRequest(
                model=body.model,
                system_prompt=body.system_prompt,
                user_prompt=body.user_prompt,
            )
        except ValueError as exc:
            return _error_response(status.HTTP_400_BAD_REQUEST, str(exc))

        try:
            async with watch_client_disconnect(request) as token:
                result = await services.judge.evaluate(judge_request, cancellation=token)
        except JudgeOutputError as exc:
            _LOG.warning("Judge output rejected: %s", exc)
            return _error_response(status.HTTP_502_BAD_GATEWAY, str(exc), snippet=exc.snippet)
        except Exception as exc:
            return _failure_response(exc, context="judge")
        return JudgeResponse(result=result.to_payload())

    @api.post(
        "/ollama",
        response_model=StartModelResponse | StopModelResponse,
        responses=error_responses,
    )
    async def manage_model(
        body: LifecycleRequestBody,
        request: Request,
        x_api_key: str | None = Header(default=None),
    ):
        _require_api_key(x_api_key)
        services: ArenaServices = app.state.services
        try:
            action = LifecycleAction(body.action.strip().lower())
        except ValueError:
            return _error_response(status.HTTP_400_BAD_REQUEST, "Unknown action")
        model = normalize_model_name(body.model)
        if not model:
            return _error_response(status.HTTP_400_BAD_REQUEST, "Model is required")
        lifecycle_request = LifecycleRequest(model=model, action=action)

        if lifecycle_request.action is LifecycleAction.STOP:
            outcome = await services.lifecycle.stop(lifecycle_request.model)
            response = StopModelResponse(
                stopped=outcome is StopOutcome.STOPPED,
                model=model,
                outcome=outcome.value,
            )
            if outcome is StopOutcome.FAILED:
                return JSONResponse(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    content=response.model_dump(),
                )
            return response

        async with watch_client_disconnect(request) as token:
            result = await services.lifecycle.start(lifecycle_request.model, cancellation=token)
        if result.outcome is StartOutcome.ABORTED:
            return _error_response(HTTP_499_CLIENT_CLOSED_REQUEST, "aborted")
        if not result.available:
            failed = StartModelResponse(
                available=False,
                model=result.model,
                outcome=result.outcome.value,
                error=str(ModelUnavailableError(model, result.diagnostic)),
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=failed.model_dump(),
            )
        return StartModelResponse(available=True, model=result.model, outcome=result.outcome.value)

    @api.get("/ollama", response_model=ModelInventoryResponse, responses=error_responses)
    async def list_models(x_api_key: str | None = Header(default=None)) -> ModelInventoryResponse:
        _require_api_key(x_api_key)
        services: ArenaServices = app.state.services
        registry = services.lifecycle.registry
        pulled, running = await asyncio.gather(
            asyncio.to_thread(registry.list_pulled_models),
            asyncio.to_thread(registry.list_running_models),
        )
        return ModelInventoryResponse(
            host=services.chat.host_identity(),
            models=sorted(pulled),
            running=sorted(running),
        )

    app.include_router(api)


async def _compare_text_chunks(
    stream: DeltaStream,
    watcher: ClientDisconnectWatcher,
    *,
    model: str,
) -> AsyncIterator[bytes]:
    try:
        async for delta in stream.iter_deltas():
            yield delta.encode("utf-8")
    except OperationCancelledError as exc:
        if exc.is_timeout:
            _LOG.warning("Compare stream timed out: model=%s", model)
        else:
            _LOG.info("Compare stream cancelled: model=%s reason=%s", model, exc.reason.value)
    except ChatRequestError as exc:
        _LOG.warning("Compare stream failed after response started: model=%s error=%s", model, exc)
    finally:
        watcher.close()
        await stream.aclose()


async def _clash_event_lines(
    dialogue: DialogueRun,
    watcher: ClientDisconnectWatcher,
) -> AsyncIterator[bytes]:
    events = dialogue.events()
    try:
        async for event in events:
            yield (json.dumps(event.to_payload(), ensure_ascii=False) + "\n").encode("utf-8")
    finally:
        watcher.close()
        await events.aclose()
        await dialogue.close()


def _to_dialogue_request(body: ClashRequestBody) -> DialogueRequest:
    history = tuple(
        ConversationTurn(speaker=Speaker(turn.speaker), content=turn.content, turn_number=turn.turn)
        for turn in body.history
        if turn.content.strip()
    )
    return DialogueRequest(
        model_a=body.model_a,
        model_b=body.model_b,
        system_prompt=body.system_prompt,
        user_prompt=body.user_prompt,
        max_rounds=_positive_int(body.max_rounds, default=DEFAULT_MAX_ROUNDS),
        start_from_turn=_positive_int(body.start_from_turn, default=1),
        history=history,
    )


def _positive_int(value: object, *, default: int) -> int:
    """正の数として解釈できる値を整数に変換する。できなければ default を返す。"""
    if isinstance(value, bool):
        return default
    if isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return default
    else:
        return default
    if not math.isfinite(number) or number < 1:
        return default
    return int(number)


def _require_api_key(provided: str | None) -> None:
    expected = (os.getenv("ARENA_API_KEY") or os.getenv("OLLAMA_API_KEY") or "").strip()
    if expected and (provided or "") != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _failure_response(exc: Exception, *, context: str) -> JSONResponse:
    """ユースケースの例外を HTTP ステータスへ変換する。想定外の例外は再送出する。"""
    if isinstance(exc, OperationCancelledError):
        if exc.is_timeout:
            _LOG.warning("%s request timed out", context)
            return _error_response(status.HTTP_504_GATEWAY_TIMEOUT, "timeout")
        _LOG.info("%s request cancelled: reason=%s", context, exc.reason.value)
        return _error_response(HTTP_499_CLIENT_CLOSED_REQUEST, "aborted")
    if isinstance(exc, ModelUnavailableError):
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
    if isinstance(exc, ChatRequestError):
        _LOG.warning("%s upstream error: %s", context, exc)
        return _error_response(status.HTTP_502_BAD_GATEWAY, str(exc))
    if isinstance(exc, OllamaConfigurationError):
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
    raise exc


def _error_response(status_code: int, message: str, *, snippet: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message, snippet=snippet).model_dump(exclude_none=True),
    )


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = str(first.get("msg", "Invalid request body"))
    return f"{location}: {message}" if location else message


def _build_default_services() -> ArenaServices:
    return ArenaServices.build(
        registry=OllamaCliModelRegistryAdapter(),
        process=OllamaCliModelProcessAdapter(),
        chat=OllamaChatAdapter(),
    )


def _load_runtime_env() -> None:
    app_env = os.getenv("APP_ENV", "development")
    env_file = Path(f".env.{app_env}")
    if env_file.exists():
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(override=False)
