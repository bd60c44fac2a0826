from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from chatrelay.server.runtime import ServerRuntime

log = logging.getLogger("chatrelay.cmd.server")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def load_config(path: Optional[Path]) -> Dict[str, Any]:
    """Read the YAML config (if any), then apply RELAY_* environment overrides."""

    config: Dict[str, Any] = {}
    if path is not None:
        config = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(config, dict):
            raise ValueError(f"{path}: config must be a mapping")

    listen = os.getenv("RELAY_LISTEN")
    if listen:
        config["listen"] = listen
    store_path = os.getenv("RELAY_STORE_PATH")
    if store_path:
        config["store"] = {**(config.get("store") or {}), "path": store_path}
    return config


async def _run(config: Dict[str, Any]) -> None:
    runtime = ServerRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Relay running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Direct-message relay server")
    parser.add_argument("--config", help="Path to server YAML config")
    parser.add_argument("--log-level", help="Override log level (DEBUG, INFO, ...)")
    args = parser.parse_args(argv)

    config = load_config(Path(args.config) if args.config else None)
    level = (args.log_level or config.get("log_level") or "INFO").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
