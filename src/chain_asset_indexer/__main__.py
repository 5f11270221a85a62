"""Command-line entry point: ``python -m chain_asset_indexer <command>``."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any

from chain_asset_indexer.app import LedgerApp
from chain_asset_indexer.chain.client import ChainClientError
from chain_asset_indexer.config import get_settings
from chain_asset_indexer.query.service import InvalidInputError
from chain_asset_indexer.ratelimit import RateLimitExceededError
from chain_asset_indexer.scanner.runner import ScanError
from chain_asset_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

CLI_CLIENT_ID = "cli"


def _print_json(payload: Any) -> None:
    if dataclasses.is_dataclass(payload) and not isinstance(payload, type):
        payload = dataclasses.asdict(payload)
    print(json.dumps(payload, indent=2, default=str))


async def _init_db() -> None:
    settings = get_settings()
    db = DatabaseManager(settings.database.url, pool_size=settings.database.pool_size)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


async def _run(args: argparse.Namespace) -> None:
    if args.command == "init-db":
        await _init_db()
        return

    async with LedgerApp(get_settings()) as app:
        if args.command == "scan":
            handle = app.scan(CLI_CLIENT_ID, args.from_block)
            try:
                result = await handle.wait()
            except asyncio.CancelledError:
                handle.stop()
                raise
            _print_json(result)
        elif args.command == "balance":
            _print_json({"address": args.address, "balance": await app.balance(CLI_CLIENT_ID, args.address)})
        elif args.command == "token-balance":
            balance = await app.token_balance(CLI_CLIENT_ID, args.address, args.contract)
            _print_json({"address": args.address, "contract": args.contract, "balance": balance})
        elif args.command == "block":
            _print_json(await app.block(CLI_CLIENT_ID, args.ref))
        elif args.command == "tx":
            _print_json(await app.transaction(CLI_CLIENT_ID, args.hash))
        elif args.command == "transactions":
            page = await app.transactions(
                CLI_CLIENT_ID,
                page=args.page,
                page_size=args.size,
                tx_type=args.type,
                address=args.address,
                block_number=args.block,
            )
            _print_json(
                {
                    "transactions": [dataclasses.asdict(t) for t in page.transactions],
                    "total": page.total,
                    "page": page.page,
                    "page_size": page.page_size,
                    "pages": page.pages,
                }
            )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chain_asset_indexer",
        description="Scan Ethereum blocks into a relational store and query balances.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    scan = sub.add_parser("scan", help="Scan from a height (default: stored tip + 1) to the chain head")
    scan.add_argument("--from-block", type=int, default=None, dest="from_block")

    balance = sub.add_parser("balance", help="Native balance in ether")
    balance.add_argument("address")

    token = sub.add_parser("token-balance", help="ERC20 balance in raw token units")
    token.add_argument("address")
    token.add_argument("contract")

    block = sub.add_parser("block", help="Block summary by height or 'latest'")
    block.add_argument("ref")

    tx = sub.add_parser("tx", help="Transaction detail by hash")
    tx.add_argument("hash")

    listing = sub.add_parser("transactions", help="List scanned transactions")
    listing.add_argument("--page", type=int, default=1)
    listing.add_argument("--size", type=int, default=10)
    listing.add_argument("--type", default=None, help="native_transfer, token_transfer or contract_call")
    listing.add_argument("--address", default=None)
    listing.add_argument("--block", type=int, default=None)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    except (InvalidInputError, RateLimitExceededError) as e:
        logger.error("%s", e)
        return 2
    except (ChainClientError, ScanError) as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
