"""Command line entry point: ``usage-gateway start|status|stop``.

``start`` runs the gateway in the foreground:
    single-instance check -> config -> logfire -> PID record ->
    signal handlers -> server, until SIGINT/SIGTERM.
"""

import argparse
import asyncio
import os
import signal
import sys

import logfire

from . import __version__
from .cache import session_usage_cache
from .config import GatewayConfig, ensure_home_dir, load_config
from .errors import ConfigError, ServiceAlreadyRunning
from .observability import configure_from
from .process_check import SingleInstanceGuard
from .server import GatewayServer


async def serve(config: GatewayConfig) -> None:
    """Run the server until the task is cancelled."""
    server = GatewayServer(config, cache=session_usage_cache)
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def run(config: GatewayConfig, debug: bool = False) -> None:
    """Start the gateway in this process.

    Raises:
        ServiceAlreadyRunning: Another live instance holds the PID record
    """
    guard = SingleInstanceGuard(config.pid_file)
    if guard.is_service_running():
        raise ServiceAlreadyRunning(guard.read_pid())

    ensure_home_dir(config.pid_file.parent)
    configure_from(config, debug=debug)
    session_usage_cache.resize(config.session_cache_size)

    if not guard.acquire(os.getpid()):
        raise ServiceAlreadyRunning(guard.read_pid())
    guard.install_signal_handlers()

    try:
        asyncio.run(serve(config))
    finally:
        guard.cleanup_pid_file(only_if_owned=True)


def _load(args: argparse.Namespace, overrides: dict | None = None) -> GatewayConfig | None:
    """Load config, printing a one-line error instead of a traceback."""
    try:
        return load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return None


def _cmd_start(args: argparse.Namespace) -> int:
    config = _load(args, overrides={"host": args.host, "port": args.port})
    if config is None:
        return 1

    if config.effective_host() != config.host:
        print("⚠️ API key is not set. HOST is forced to 127.0.0.1.")

    try:
        run(config, debug=args.debug)
    except ServiceAlreadyRunning:
        print("✅ Service is already running in the background.")
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load(args)
    if config is None:
        return 1
    guard = SingleInstanceGuard(config.pid_file)
    if guard.is_service_running():
        print(f"usage-gateway: running (PID: {guard.read_pid()}, port: {config.port})")
    else:
        print("usage-gateway: stopped")
    return 0


def _cmd_stop(args: argparse.Namespace) -> int:
    config = _load(args)
    if config is None:
        return 1
    guard = SingleInstanceGuard(config.pid_file)
    if not guard.is_service_running():
        print("usage-gateway is not running")
        guard.cleanup_pid_file()
        return 1

    pid = guard.read_pid()
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        guard.cleanup_pid_file()
    logfire.info(f"Sent SIGTERM to gateway (PID {pid})")
    print(f"usage-gateway stopped (PID: {pid})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="usage-gateway",
        description="Messages API gateway with per-session usage tracking",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Path to config.json")
    sub = parser.add_subparsers(dest="command")

    start = sub.add_parser("start", help="Run the gateway in the foreground")
    start.add_argument("--host", help="Bind address")
    start.add_argument("--port", type=int, help="Listen port")
    start.add_argument("--debug", action="store_true", help="Log to the console")
    start.set_defaults(func=_cmd_start)

    status = sub.add_parser("status", help="Show whether the gateway is running")
    status.set_defaults(func=_cmd_status)

    stop = sub.add_parser("stop", help="Stop the running gateway")
    stop.set_defaults(func=_cmd_stop)

    return parser


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args([*argv, "start"])
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
