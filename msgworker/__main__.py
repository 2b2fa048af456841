"""Executable entrypoint for the messaging worker service."""

from __future__ import annotations

import logging
import os

import uvicorn

from config import worker_config


def _init_logging() -> None:
    level_name = (os.getenv("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)


def main() -> None:
    _init_logging()
    cfg = worker_config()
    uvicorn.run(
        "msgworker.api:create_app",
        host="0.0.0.0",
        port=cfg.port,
        factory=True,
        workers=1,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
