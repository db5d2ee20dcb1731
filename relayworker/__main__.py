"""Executable entrypoint for the relay worker service."""

from __future__ import annotations

import logging
import os

import uvicorn


def _init_logging() -> str:
    level_name = (os.getenv("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    logging.getLogger("relayworker").setLevel(level)
    return level_name.lower()


def main() -> None:
    log_level = _init_logging()
    port = int(os.getenv("RELAY_PORT", "3000"))
    uvicorn.run(
        "relayworker.api:create_app",
        host="0.0.0.0",
        port=port,
        factory=True,
        workers=1,
        log_level=log_level if log_level in {"critical", "error", "warning", "info", "debug"} else "info",
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
