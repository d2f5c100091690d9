"""プロセス終了時にモデルを停止するハンドラ。

import 時には何も登録しない。起動処理から install_exit_handlers() を明示的に呼ぶ。
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from collections.abc import Callable
from types import FrameType, TracebackType
from typing import Any

from arena.application.use_cases.model_lifecycle import ModelLifecycleUseCase

_LOG = logging.getLogger(__name__)

_EXIT_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class _StopOnce:
    """複数の終了経路から呼ばれても stop_all_sync を 1 回だけ実行する。

    シグナルでは稼働中のモデルだけを止め、未捕捉例外では pull 済みの全モデルを止める。
    """

    def __init__(self, lifecycle: ModelLifecycleUseCase) -> None:
        self._lifecycle = lifecycle
        self._lock = threading.Lock()
        self._done = False

    def __call__(self, trigger: str, *, running_only: bool = False) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
        _LOG.info("Stopping models before exit: trigger=%s", trigger)
        try:
            self._lifecycle.stop_all_sync(running_only=running_only)
        except Exception:
            _LOG.exception("Failed to stop models before exit")


def install_exit_handlers(lifecycle: ModelLifecycleUseCase) -> Callable[[], None]:
    """SIGTERM / SIGINT と未捕捉例外 (メインスレッド・ワーカースレッド) にフックする。

    既存のハンドラは保持し、モデル停止後に呼び出す。戻り値の関数で登録を解除する。
    """
    stop_once = _StopOnce(lifecycle)
    previous_signal_handlers: dict[int, Any] = {}

    def handle_signal(signum: int, frame: FrameType | None) -> None:
        stop_once(signal.Signals(signum).name, running_only=True)
        previous = previous_signal_handlers.get(signum, signal.SIG_DFL)
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(signum, signal.SIG_DFL)
            signal.raise_signal(signum)

    for signum in _EXIT_SIGNALS:
        try:
            previous_signal_handlers[signum] = signal.signal(signum, handle_signal)
        except ValueError:
            # メインスレッド以外からは登録できない。
            _LOG.warning("Cannot install handler for %s outside the main thread", signum)

    previous_excepthook = sys.excepthook
    previous_thread_excepthook = threading.excepthook

    def handle_exception(
        exc_type: type[BaseException],
        exc: BaseException,
        traceback: TracebackType | None,
    ) -> None:
        stop_once("uncaught-exception")
        previous_excepthook(exc_type, exc, traceback)

    def handle_thread_exception(args: threading.ExceptHookArgs) -> None:
        stop_once("uncaught-thread-exception")
        previous_thread_excepthook(args)

    sys.excepthook = handle_exception
    threading.excepthook = handle_thread_exception

    def uninstall() -> None:
        for signum, previous in previous_signal_handlers.items():
            if signal.getsignal(signum) is handle_signal:
                signal.signal(signum, previous)
        if sys.excepthook is handle_exception:
            sys.excepthook = previous_excepthook
        if threading.excepthook is handle_thread_exception:
            threading.excepthook = previous_thread_excepthook

    return uninstall
