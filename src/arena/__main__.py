"""`python -m arena` で API サーバーを起動する。"""

from __future__ import annotations

import argparse
import logging
import os

import uvicorn

from arena.adapters.inbound.http.app import create_app
from arena.adapters.inbound.process_hooks import install_exit_handlers


def main() -> None:
    parser = argparse.ArgumentParser(description="LLM arena API server")
    parser.add_argument("--host", default=os.getenv("ARENA_HOST", "127.0.0.1"), help="Server host")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("ARENA_PORT", "8000")),
        help="Server port",
    )
    parser.add_argument("--log-level", default=os.getenv("ARENA_LOG_LEVEL", "info"))
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = create_app()
    uninstall = install_exit_handlers(app.state.services.lifecycle)
    try:
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    finally:
        uninstall()


if __name__ == "__main__":
    main()
