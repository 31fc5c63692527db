"""CLI entry point for wxbridge."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import httpx
import structlog
from pydantic import ValidationError

from wxbridge import __version__
from wxbridge.app import build_bridge, build_status_server
from wxbridge.core.config import BridgeConfig, load_config
from wxbridge.exceptions import BridgeError, ConfigError
from wxbridge.storage.files import FileAllowList, FilePairingCodeStore

logger = structlog.get_logger()


def _configure_cli_logging() -> None:
    """Send log lines to stderr so stdout carries only command output.

    The `run` command replaces this with the full setup once config is loaded.
    """
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


async def _run_bridge(config: BridgeConfig) -> None:
    bridge = build_bridge(config)
    status_server = build_status_server(bridge)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await bridge.start()
    if status_server is not None:
        await status_server.start()

    code = await FilePairingCodeStore(config.pairing_code_file).current()
    logger.info("bridge_ready", version=__version__)
    print(f"wxbridge {__version__} ready. New contacts pair by sending: {code}")

    try:
        await stop_event.wait()
    finally:
        logger.info("bridge_shutting_down")
        if status_server is not None:
            await status_server.stop()
        await bridge.stop()
        print("\nShutdown complete.")


def _print_status(config: BridgeConfig) -> int:
    url = f"http://{config.status_host}:{config.status_port}/status"
    try:
        response = httpx.get(url, timeout=5.0)
        response.raise_for_status()
    except httpx.HTTPError as e:
        print(f"Bridge is not reachable at {url}: {e}", file=sys.stderr)
        return 1
    print(json.dumps(response.json(), indent=2, ensure_ascii=False))
    return 0


async def _pairing_code(config: BridgeConfig, *, regenerate: bool) -> str:
    store = FilePairingCodeStore(config.pairing_code_file)
    return await (store.regenerate() if regenerate else store.current())


async def _allowed_users(config: BridgeConfig) -> list[dict]:
    return await FileAllowList(config.allowed_users_file).list_users()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wxbridge",
        description="Relay WeChat conversations to an AI gateway.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="directory holding config and secrets (default: ~/.openclaw)",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="start the bridge (default)")
    sub.add_parser("status", help="print the status of a running bridge")
    pairing = sub.add_parser("pairing-code", help="print the pairing code")
    pairing.add_argument(
        "--regenerate", action="store_true", help="replace the code with a new one"
    )
    sub.add_parser("allowed", help="list paired users")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    _configure_cli_logging()
    try:
        config = load_config(args.config_dir)
    except (ConfigError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    command = args.command or "run"
    if command == "status":
        return _print_status(config)
    if command == "pairing-code":
        print(asyncio.run(_pairing_code(config, regenerate=args.regenerate)))
        return 0
    if command == "allowed":
        try:
            users = asyncio.run(_allowed_users(config))
        except BridgeError as e:
            print(f"Cannot read allow list: {e}", file=sys.stderr)
            return 1
        for user in users:
            print(f"{user.get('wxid', '')}\t{user.get('nickname', '')}\t{user.get('addedAt', '')}")
        return 0

    try:
        asyncio.run(_run_bridge(config))
    except BridgeError as e:
        print(f"Bridge failed: {e}", file=sys.stderr)
        return 1
    except Exception:
        logger.exception("bridge_crashed")
        return 1
    except KeyboardInterrupt:
        pass
    return 0


def run() -> None:
    sys.exit(main())
