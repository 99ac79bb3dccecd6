# -*- encoding: utf-8 -*-
"""
EVM Confirmations
evm_confirmations.cli module

Command-line interface for the confirmation watcher.

Commands:
  evm-confirmations info   - Show the effective configuration
  evm-confirmations watch  - Watch a mined transaction until confirmed
"""

import argparse
import json
import logging
import sys

from evm_confirmations.config import WatchConfig, load_config
from evm_confirmations.errors import ConfirmationError
from evm_confirmations.service import build_service


def cmd_info(args):
    """Show the configuration loaded from the environment."""
    config = load_config()
    watch_config = WatchConfig.from_config(config)

    print(f"RPC URL:           {config['ETH_RPC_URL']}")
    print(f"WebSocket URL:     {config['ETH_WS_URL'] or '(not set, polling only)'}")
    print(f"Confirmations:     {watch_config.confirmation_threshold}")
    print(f"Polling interval:  {watch_config.polling_interval:.3f}s")
    print(f"Subscribe timeout: {config['SUBSCRIBE_TIMEOUT']}s")


def cmd_watch(args):
    """Watch a transaction and print each confirmation as a JSON line."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    config = load_config()
    if args.confirmations is not None:
        config["CONFIRMATION_BLOCKS"] = args.confirmations
    try:
        WatchConfig.from_config(config)
        service = build_service(config)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    receipt = service["block_source"].get_transaction_receipt(args.tx_hash)
    if receipt is None:
        print(f"Error: transaction {args.tx_hash} has not been mined", file=sys.stderr)
        sys.exit(1)

    def _print_event(event):
        print(json.dumps(event.as_dict()), flush=True)

    try:
        handle = service["watcher"].watch(receipt, args.tx_hash, _print_event)
    except ConfirmationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        handle.wait()
    except KeyboardInterrupt:
        handle.cancel()


def main():
    """Entry point for the evm-confirmations CLI."""
    parser = argparse.ArgumentParser(
        prog="evm-confirmations",
        description="Watch EVM transactions for block confirmations",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # evm-confirmations info
    info_parser = subparsers.add_parser(
        "info", help="Show configuration"
    )
    info_parser.set_defaults(func=cmd_info)

    # evm-confirmations watch
    watch_parser = subparsers.add_parser(
        "watch", help="Watch a mined transaction for confirmations"
    )
    watch_parser.add_argument("tx_hash", help="Transaction hash (0x-prefixed hex)")
    watch_parser.add_argument(
        "--confirmations", type=int,
        help="Blocks required on top of the inclusion block (default: CONFIRMATION_BLOCKS)",
    )
    watch_parser.set_defaults(func=cmd_watch)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
