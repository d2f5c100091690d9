"""Ollama 接続設定を環境変数から解決する。

接続先はリクエストごとに解決し、起動時にはキャッシュしない。
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from urllib.parse import urlsplit

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 600.0
DEFAULT_IDLE_TIMEOUT_SECONDS = 120.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_OLLAMA_BIN = "ollama"


class OllamaConfigurationError(RuntimeError):
    """Ollama 接続設定の不備を表す例外。"""


@dataclass(frozen=True, slots=True)
class OllamaSettings:
    """1 リクエスト分の Ollama 接続設定。"""

    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    request_timeout_seconds: float | None = DEFAULT_REQUEST_TIMEOUT_SECONDS
    idle_timeout_seconds: float | None = DEFAULT_IDLE_TIMEOUT_SECONDS
    connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS
    pull_timeout_seconds: float | None = None
    ollama_bin: str = DEFAULT_OLLAMA_BIN

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}/api/chat"

    @property
    def host(self) -> str:
        """CLI の OLLAMA_HOST に渡す host:port を返す。"""
        parts = urlsplit(self.base_url)
        return parts.netloc or self.base_url

    def upstream_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers


def resolve_ollama_settings() -> OllamaSettings:
    """現在の環境変数から OllamaSettings を組み立てる。"""
    return OllamaSettings(
        base_url=normalize_base_url(
            os.getenv("OLLAMA_BASE_URL") or os.getenv("BASE_URL") or DEFAULT_BASE_URL
        ),
        api_key=os.getenv("OLLAMA_API_KEY", "").strip(),
        request_timeout_seconds=resolve_positive_float_env(
            "ARENA_CHAT_TIMEOUT_SECONDS", default=DEFAULT_REQUEST_TIMEOUT_SECONDS
        ),
        idle_timeout_seconds=resolve_positive_float_env(
            "ARENA_CHAT_IDLE_TIMEOUT_SECONDS", default=DEFAULT_IDLE_TIMEOUT_SECONDS
        ),
        pull_timeout_seconds=resolve_positive_float_env("ARENA_PULL_TIMEOUT_SECONDS", default=None),
        ollama_bin=os.getenv("OLLAMA_BIN", "").strip() or DEFAULT_OLLAMA_BIN,
    )


def normalize_base_url(raw: str) -> str:
    """スキーム省略時は http:// を補い、末尾のスラッシュを除去する。"""
    value = raw.strip() or DEFAULT_BASE_URL
    if "://" not in value:
        value = f"http://{value}"
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise OllamaConfigurationError(f"Ollama のベース URL が不正です: {raw}")
    return value.rstrip("/")


def resolve_positive_float_env(name: str, *, default: float | None) -> float | None:
    """正の数値として解釈できない値は default にフォールバックする。"""
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        parsed = float(raw_value)
    except ValueError:
        return default
    if parsed <= 0:
        return default
    return parsed
