"""agent-bridge command line entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agent_bridge.config import BridgeConfig, discover_config, load_bridge_config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
LOG_FILENAME = "agent-bridge.log"


def configure_logging(level: str | None = None, log_dir: str | Path | None = None) -> Path:
    """Install rotating-file and stderr handlers on the root logger.

    Returns the log file path.
    """
    level = (level or os.getenv("AGENT_BRIDGE_LOG_LEVEL", "INFO")).upper()
    log_dir = Path(log_dir) if log_dir else Path.home() / ".agent-bridge" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILENAME

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def resolve_config(config_path: str | None) -> BridgeConfig:
    """Explicit path, else ``.agent-bridge.yaml`` in the cwd, else env only."""
    logger = logging.getLogger(__name__)
    if config_path:
        logger.info("Using explicit config path: %s", config_path)
        return load_bridge_config(config_path)
    discovered = discover_config(Path.cwd())
    if discovered is not None:
        logger.info("Auto-discovered config: %s", discovered)
        return load_bridge_config(discovered)
    logger.info("No config file found in %s; using defaults", Path.cwd())
    return BridgeConfig.from_env()


async def serve(config: BridgeConfig) -> None:
    """Run the host server until SIGINT/SIGTERM."""
    from agent_bridge.host import HostBridge, HostServer

    logger = logging.getLogger(__name__)
    bridge = HostBridge(config)
    server = HostServer(bridge)
    await server.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable for %s", sig)
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down host server")
        await server.stop()


async def check(config: BridgeConfig) -> dict[str, dict]:
    """Report which agent CLIs resolve to an executable."""
    from agent_bridge.host import HostBridge

    bridge = HostBridge(config)
    report = {}
    for kind in ("claude", "codex", "copilot", "gemini", "opencode"):
        report[kind] = await bridge.invoke("check_cli_available", {"kind": kind})
    return report


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agent-bridge",
        description="agent-bridge: one event stream over many coding-agent CLIs",
    )
    sub = parser.add_subparsers(dest="command")

    serve_parser = sub.add_parser("serve", help="Run the host server")
    serve_parser.add_argument("--host", help="Bind address (default: 127.0.0.1)")
    serve_parser.add_argument(
        "--port", type=int, help="Server port (0=random available port)",
    )
    serve_parser.add_argument(
        "--token", help="Require this bearer token on every request",
    )
    serve_parser.add_argument(
        "--config", metavar="PATH", help="YAML config file",
    )

    check_parser = sub.add_parser("check", help="Report which agent CLIs are installed")
    check_parser.add_argument("--config", metavar="PATH", help="YAML config file")

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        sys.exit(2)

    config = resolve_config(args.config)

    if args.command == "check":
        for kind, status in asyncio.run(check(config)).items():
            mark = "ok" if status["available"] else "missing"
            print(f"  {kind:<9} {mark:<8} {status['path']}")
        sys.exit(0)

    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.token:
        config.auth_token = args.token

    log_file = configure_logging(config.log_level, config.log_dir)
    logging.getLogger(__name__).info(
        "Starting agent-bridge host cwd=%s host=%s port=%s log=%s",
        Path.cwd(), config.host, config.port, log_file,
    )
    asyncio.run(serve(config))
    sys.exit(0)


if __name__ == "__main__":
    main()
