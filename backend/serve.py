from __future__ import annotations

import argparse
import logging
import os
import socket

import uvicorn

logger = logging.getLogger("tradejournal.serve")


def _port_in_use(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(0.2)
        return sock.connect_ex((host, port)) == 0


def _pick_port(host: str, wanted: int, attempts: int = 20) -> int:
    """First free port at or after ``wanted``; falls back to ``wanted`` itself."""
    for candidate in range(wanted, wanted + attempts + 1):
        if not _port_in_use(host, candidate):
            return candidate
    return wanted


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trade journal accounting API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8010)
    parser.add_argument("--state-path", default="", help="journal state JSON file")
    parser.add_argument("--config-path", default="", help="engine config JSON file")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    for value, env_name in (
        (args.state_path, "TRADE_JOURNAL_STATE_PATH"),
        (args.config_path, "TRADE_JOURNAL_CONFIG_PATH"),
    ):
        if value.strip():
            os.environ[env_name] = value.strip()

    # store and config paths are read when the app module is imported
    from tradejournal.main import app as api_app

    port = _pick_port(args.host, args.port)
    if port != args.port:
        logger.warning(f"Port {args.port} is busy, using {port}")
    logger.info(f"Serving trade journal API on http://{args.host}:{port}")

    uvicorn.run(
        api_app,
        host=args.host,
        port=port,
        log_level=args.log_level,
        loop="asyncio",
        http="h11",
    )


if __name__ == "__main__":
    main()
