"""ollama CLI (list / ps / pull / stop) を使うモデル管理アダプタ。"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import subprocess
from collections.abc import Callable

from arena.adapters.outbound.ollama_settings import (
    OllamaConfigurationError,
    OllamaSettings,
    resolve_ollama_settings,
)
from arena.application.concurrency.cancellation import (
    CancellationToken,
    DeadlineGuard,
    OperationCancelledError,
    shielded,
)
from arena.domain.value_objects.model_lifecycle import PullResult, normalize_model_name
from arena.ports.outbound.model_process_port import ModelProcessPort
from arena.ports.outbound.model_registry_port import ModelRegistryPort

_LOG = logging.getLogger(__name__)

_MODEL_TOKEN = re.compile(r"[A-Za-z0-9_\-:.]+")
_LIST_TIMEOUT_SECONDS = 30.0
_STOP_TIMEOUT_SECONDS = 60.0
_DIAGNOSTIC_LIMIT = 2000


def parse_model_table(raw: str) -> frozenset[str]:
    """`ollama list` / `ollama ps` の表出力から各行先頭のモデル名を取り出す。"""
    models: set[str] = set()
    for line in raw.splitlines():
        if not line.strip():
            continue
        lowered = line.lower()
        if "name" in lowered and "id" in lowered:
            continue
        match = _MODEL_TOKEN.search(line)
        if match is not None:
            models.add(match.group(0))
    return frozenset(models)


class _OllamaCliBase:
    """CLI 呼び出しの共通処理。"""

    def __init__(
        self,
        *,
        settings_provider: Callable[[], OllamaSettings] = resolve_ollama_settings,
    ) -> None:
        """接続設定の取得関数を受け取る。設定は呼び出しごとに解決する。"""
        self._settings_provider = settings_provider

    def _command(self, *args: str) -> tuple[list[str], dict[str, str]]:
        settings = self._settings_provider()
        env = dict(os.environ)
        env["OLLAMA_HOST"] = settings.host
        return [settings.ollama_bin, *args], env

    def _run_sync(self, *args: str, timeout: float) -> subprocess.CompletedProcess[str]:
        command, env = self._command(*args)
        return subprocess.run(
            command,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            env=env,
            timeout=timeout,
            check=False,
        )


class OllamaCliModelRegistryAdapter(_OllamaCliBase, ModelRegistryPort):
    """`ollama list` / `ollama ps` でモデルを照会する。"""

    def list_pulled_models(self) -> frozenset[str]:
        return self._list("list")

    def list_running_models(self) -> frozenset[str]:
        return self._list("ps")

    def is_pulled(self, model: str) -> bool:
        key = normalize_model_name(model)
        return bool(key) and key in self.list_pulled_models()

    def is_running(self, model: str) -> bool:
        key = normalize_model_name(model)
        return bool(key) and key in self.list_running_models()

    def _list(self, subcommand: str) -> frozenset[str]:
        try:
            completed = self._run_sync(subcommand, timeout=_LIST_TIMEOUT_SECONDS)
        except (OSError, subprocess.SubprocessError, OllamaConfigurationError) as exc:
            _LOG.warning("ollama %s failed: %s", subcommand, exc)
            return frozenset()
        if completed.returncode != 0:
            _LOG.warning(
                "ollama %s exited with %s: %s",
                subcommand,
                completed.returncode,
                completed.stderr.strip(),
            )
            return frozenset()
        return parse_model_table(completed.stdout)


class OllamaCliModelProcessAdapter(_OllamaCliBase, ModelProcessPort):
    """`ollama pull` / `ollama stop` を子プロセスとして実行する。"""

    async def pull_model(self, model: str, cancellation: CancellationToken) -> PullResult:
        """モデルを pull する。キャンセル時は子プロセスを kill して aborted を返す。"""
        key = normalize_model_name(model)
        if not key:
            return PullResult(succeeded=False, output="model is required")
        try:
            settings = self._settings_provider()
            command, env = self._command("pull", key)
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except (OSError, OllamaConfigurationError) as exc:
            _LOG.warning("Failed to launch ollama pull: model=%s error=%s", key, exc)
            return PullResult(succeeded=False, output=str(exc))

        with cancellation.link() as token, DeadlineGuard(
            token, overall_seconds=settings.pull_timeout_seconds
        ):
            try:
                stdout, _ = await token.run(process.communicate())
            except OperationCancelledError as exc:
                await shielded(_kill(process))
                if exc.is_timeout:
                    return PullResult(succeeded=False, output="pull timed out")
                return PullResult(succeeded=False, aborted=True)
            except asyncio.CancelledError:
                await shielded(_kill(process))
                raise

        output = _tail(stdout.decode("utf-8", errors="replace") if stdout else "")
        if process.returncode != 0:
            return PullResult(succeeded=False, output=output)
        return PullResult(succeeded=True, output=output)

    def stop_model(self, model: str) -> bool:
        key = normalize_model_name(model)
        if not key:
            return False
        try:
            completed = self._run_sync("stop", key, timeout=_STOP_TIMEOUT_SECONDS)
        except (OSError, subprocess.SubprocessError, OllamaConfigurationError) as exc:
            _LOG.warning("ollama stop failed: model=%s error=%s", key, exc)
            return False
        if completed.returncode != 0:
            _LOG.warning(
                "ollama stop exited with %s: model=%s stderr=%s",
                completed.returncode,
                key,
                completed.stderr.strip(),
            )
            return False
        return True


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


def _tail(text: str) -> str:
    stripped = text.strip()
    if len(stripped) <= _DIAGNOSTIC_LIMIT:
        return stripped
    return stripped[-_DIAGNOSTIC_LIMIT:]
