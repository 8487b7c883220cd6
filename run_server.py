#!/usr/bin/env python3
"""
Custodia server runner — starts the local custody API:
  - loads configuration (TOML file + environment overrides)
  - configures logging
  - checks the node's chain id once at startup
  - serves the HTTP API until interrupted

Usage:
    python run_server.py --config custodia.toml
    python run_server.py --rpc-url http://localhost:8545 --chain-id 11155111 --port 8787

Environment variables (alternative to flags):
    CUSTODIA_RPC_URL, CUSTODIA_CHAIN_ID, CUSTODIA_TOKEN_ADDRESS, CUSTODIA_PORT, ...
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging

from custodia_core.api import APIServer
from custodia_core.config import load_config
from custodia_core.errors import NodeUnavailable
from custodia_core.logging_config import setup_logging
from custodia_core.service import CustodyService

logger = logging.getLogger("custodia")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Custodia local custody service")
    p.add_argument("--config", default=None, help="Path to custodia.toml config file")
    p.add_argument("--rpc-url", default=None, help="Blockchain node JSON-RPC endpoint")
    p.add_argument("--chain-id", type=int, default=None, help="Expected network chain id")
    p.add_argument("--token", default=None, help="ERC-20 token contract address")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace):
    cfg = load_config(args.config)

    # CLI flags override config
    if args.rpc_url:
        cfg.node.rpc_url = args.rpc_url
    if args.chain_id is not None:
        cfg.node.chain_id = args.chain_id
    if args.token:
        cfg.token.address = args.token
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port
    if args.log_level:
        cfg.logging.level = args.log_level.upper()
    return cfg


async def main(argv: list[str] | None = None) -> None:
    cfg = build_config(parse_args(argv))
    setup_logging(level=cfg.logging.level, fmt=cfg.logging.format, log_file=cfg.logging.file)

    service = CustodyService.from_config(cfg)
    api = APIServer(service, api_config=cfg.api)
    await api.start()
    logger.info(f"Using RPC: {cfg.node.rpc_url}")

    try:
        await service.gateway.check_network()
    except NodeUnavailable as exc:
        logger.warning(f"Node not reachable at startup: {exc.message}")

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await api.stop()
        await service.close()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
