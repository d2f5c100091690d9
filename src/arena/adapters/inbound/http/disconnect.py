"""クライアント切断をキャンセルトークンへ変換する。"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Request

from arena.application.concurrency.cancellation import CancellationToken, CancelReason

_LOG = logging.getLogger(__name__)


class ClientDisconnectWatcher:
    """ASGI の http.disconnect を監視し、受信したらトークンを ABORTED でキャンセルする。

    リクエストボディを読み終えた後に start() すること。
    """

    def __init__(self, request: Request) -> None:
        """監視対象のリクエストを受け取る。"""
        self._request = request
        self._token = CancellationToken()
        self._task: asyncio.Task[None] | None = None

    @property
    def token(self) -> CancellationToken:
        return self._token

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._watch())

    def close(self) -> None:
        """監視を終了する。トークンの状態は変えない。"""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _watch(self) -> None:
        while True:
            message = await self._request.receive()
            if message["type"] == "http.disconnect":
                if self._token.cancel(CancelReason.ABORTED):
                    _LOG.info("Client disconnected: path=%s", self._request.url.path)
                return


@asynccontextmanager
async def watch_client_disconnect(request: Request) -> AsyncIterator[CancellationToken]:
    """ブロック内だけ切断を監視し、連動するトークンを返す。"""
    watcher = ClientDisconnectWatcher(request)
    watcher.start()
    try:
        yield watcher.token
    finally:
        watcher.close()
