import asyncio
import subprocess
from pathlib import Path

import pytest

from arena.adapters.outbound import ollama_cli
from arena.adapters.outbound.ollama_cli import (
    OllamaCliModelProcessAdapter,
    OllamaCliModelRegistryAdapter,
    parse_model_table,
)
from arena.adapters.outbound.ollama_settings import OllamaSettings
from arena.application.concurrency.cancellation import CancellationToken, CancelReason

_LIST_OUTPUT = """NAME                 ID              SIZE      MODIFIED
llama3:8b            365c0bd3c000    4.7 GB    2 days ago
qwen2.5-coder:1.5b   6d3abb8d2d53    986 MB    3 weeks ago

gpt-oss:120b-cloud   569662207105    -         5 days ago
"""


def _settings() -> OllamaSettings:
    return OllamaSettings(base_url="http://gpu-box:11500", ollama_bin="/usr/local/bin/ollama")


def test_parse_model_table_skips_header_and_blank_lines() -> None:
    assert parse_model_table(_LIST_OUTPUT) == frozenset(
        {"llama3:8b", "qwen2.5-coder:1.5b", "gpt-oss:120b-cloud"}
    )
    assert parse_model_table("") == frozenset()


def test_registry_runs_list_against_configured_host(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[list[str], dict[str, str]]] = []

    def fake_run(command, **kwargs):
        calls.append((command, kwargs["env"]))
        return subprocess.CompletedProcess(command, 0, stdout=_LIST_OUTPUT, stderr="")

    monkeypatch.setattr(ollama_cli.subprocess, "run", fake_run)
    registry = OllamaCliModelRegistryAdapter(settings_provider=_settings)

    assert registry.is_pulled("llama3:8b")
    assert not registry.is_pulled("mistral")
    assert registry.is_running(" llama3:8b ")
    command, env = calls[0]
    assert command == ["/usr/local/bin/ollama", "list"]
    assert env["OLLAMA_HOST"] == "gpu-box:11500"
    assert calls[-1][0] == ["/usr/local/bin/ollama", "ps"]


def test_registry_returns_empty_set_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def missing_binary(command, **kwargs):
        raise FileNotFoundError(command[0])

    monkeypatch.setattr(ollama_cli.subprocess, "run", missing_binary)
    registry = OllamaCliModelRegistryAdapter(settings_provider=_settings)

    assert registry.list_pulled_models() == frozenset()
    assert registry.list_running_models() == frozenset()


def test_registry_returns_empty_set_on_non_zero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        ollama_cli.subprocess,
        "run",
        lambda command, **kwargs: subprocess.CompletedProcess(
            command, 1, stdout=_LIST_OUTPUT, stderr="could not connect"
        ),
    )

    registry = OllamaCliModelRegistryAdapter(settings_provider=_settings)

    assert registry.list_pulled_models() == frozenset()


def test_registry_tolerates_undecodable_output(tmp_path: Path) -> None:
    fake_bin = tmp_path / "ollama"
    fake_bin.write_bytes(
        b"#!/bin/sh\n"
        b"printf 'NAME ID SIZE MODIFIED\\nllama3:8b 365c0bd3c000 4.7GB now\\nbad\\377name 1 1 now\\n'\n"
    )
    fake_bin.chmod(0o755)
    registry = OllamaCliModelRegistryAdapter(
        settings_provider=lambda: OllamaSettings(
            base_url="http://gpu-box:11500", ollama_bin=str(fake_bin)
        )
    )

    assert registry.list_pulled_models() == frozenset({"llama3:8b", "bad"})
    assert registry.is_pulled("llama3:8b")


@pytest.mark.parametrize(("returncode", "expected"), [(0, True), (1, False)])
def test_stop_model_reports_exit_status(
    monkeypatch: pytest.MonkeyPatch,
    returncode: int,
    expected: bool,
) -> None:
    commands: list[list[str]] = []

    def fake_run(command, **kwargs):
        commands.append(command)
        return subprocess.CompletedProcess(command, returncode, stdout="", stderr="")

    monkeypatch.setattr(ollama_cli.subprocess, "run", fake_run)

    assert OllamaCliModelProcessAdapter(settings_provider=_settings).stop_model("llama3:8b") is expected
    assert commands == [["/usr/local/bin/ollama", "stop", "llama3:8b"]]


class FakeProcess:
    """asyncio.subprocess.Process の最小限の代替。"""

    def __init__(self, *, output: bytes = b"", returncode: int = 0, hang: bool = False) -> None:
        self._output = output
        self._final_returncode = returncode
        self._hang = hang
        self.returncode: int | None = None
        self.killed = False

    async def communicate(self) -> tuple[bytes, None]:
        if self._hang:
            await asyncio.Event().wait()
        self.returncode = self._final_returncode
        return self._output, None

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        assert self.returncode is not None
        return self.returncode


def _patch_spawn(monkeypatch: pytest.MonkeyPatch, process: FakeProcess) -> list[tuple[str, ...]]:
    spawned: list[tuple[str, ...]] = []

    async def fake_exec(*command: str, **kwargs: object) -> FakeProcess:
        spawned.append(command)
        return process

    monkeypatch.setattr(ollama_cli.asyncio, "create_subprocess_exec", fake_exec)
    return spawned


@pytest.mark.asyncio
async def test_pull_success(monkeypatch: pytest.MonkeyPatch) -> None:
    spawned = _patch_spawn(monkeypatch, FakeProcess(output=b"pulling manifest\nsuccess\n"))

    result = await OllamaCliModelProcessAdapter(settings_provider=_settings).pull_model(
        "llama3:8b", CancellationToken()
    )

    assert result.succeeded
    assert result.output.endswith("success")
    assert spawned == [("/usr/local/bin/ollama", "pull", "llama3:8b")]


@pytest.mark.asyncio
async def test_pull_failure_keeps_output_as_diagnostic(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_spawn(monkeypatch, FakeProcess(output=b"Error: file does not exist\n", returncode=1))

    result = await OllamaCliModelProcessAdapter(settings_provider=_settings).pull_model(
        "nope", CancellationToken()
    )

    assert not result.succeeded
    assert not result.aborted
    assert result.output == "Error: file does not exist"


@pytest.mark.asyncio
async def test_cancelled_pull_kills_child_process(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess(hang=True)
    _patch_spawn(monkeypatch, process)
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.02, token.cancel, CancelReason.ABORTED)

    result = await OllamaCliModelProcessAdapter(settings_provider=_settings).pull_model(
        "llama3:8b", token
    )

    assert result.aborted
    assert process.killed


@pytest.mark.asyncio
async def test_pull_timeout_is_reported_as_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess(hang=True)
    _patch_spawn(monkeypatch, process)
    settings = OllamaSettings(pull_timeout_seconds=0.02)

    result = await OllamaCliModelProcessAdapter(settings_provider=lambda: settings).pull_model(
        "llama3:8b", CancellationToken()
    )

    assert not result.succeeded
    assert not result.aborted
    assert result.output == "pull timed out"
    assert process.killed
