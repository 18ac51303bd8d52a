"""CLI for checking a ledger network from the command line.

Usage:
    ledger-client --network testnet nodes
    ledger-client --network testnet ping
    ledger-client --config client.json ping --node 0.0.3 --node 0.0.4

Environment variables:
    LEDGER_CLIENT_NETWORK:            Override the ledger name
    LEDGER_CLIENT_TRANSPORT_SECURITY: "true" to use TLS ports
    LEDGER_CLIENT_MAX_ATTEMPTS:       Attempts per request
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any

from ledger_client.client import Client
from ledger_client.config import ClientConfig
from ledger_client.errors import LedgerClientError


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Inspect and ping the nodes of a ledger network",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to JSON config file",
    )
    parser.add_argument(
        "--network", "-n",
        help="Ledger name (mainnet, testnet, previewnet); overrides config",
    )
    parser.add_argument(
        "--tls",
        action="store_true",
        help="Use transport security",
    )
    parser.add_argument(
        "--log-level", "-l",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ping = sub.add_parser("ping", help="Ping nodes and report reachability")
    ping.add_argument(
        "--node",
        action="append",
        default=[],
        help="Node account id to ping (repeatable; default: all)",
    )
    ping.add_argument(
        "--timeout", "-t",
        type=float,
        default=10.0,
        help="Seconds allowed per node (default: 10)",
    )

    sub.add_parser("nodes", help="List nodes with their health")
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> ClientConfig:
    """Config from file and environment, with CLI overrides on top."""
    config = ClientConfig.load(args.config)
    overrides: dict[str, Any] = {}
    if args.network:
        overrides["network"] = args.network
    if args.tls:
        overrides["transport_security"] = True
    if not overrides:
        return config
    raw = {k: v for k, v in vars(config).items() if k != "extra"}
    raw.update(overrides)
    return ClientConfig(**raw, extra=config.extra)


def cmd_ping(client: Client, nodes: list[str], timeout: float) -> int:
    accounts = nodes or sorted({str(a) for a in client.network.get_network().values()})
    failures = 0
    for account in accounts:
        try:
            client.ping(account, timeout=timeout)
            print(f"{account:>12}  ok")
        except LedgerClientError as exc:
            failures += 1
            print(f"{account:>12}  FAILED  {exc}")
    return 1 if failures else 0


def cmd_nodes(client: Client) -> int:
    for node in sorted(client.network.nodes, key=lambda n: n.account_id):
        state = "healthy" if node.is_healthy() else f"backoff {node.remaining_backoff():.1f}s"
        print(f"{str(node.account_id):>12}  {str(node.address):<40} {state}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        client = Client.for_config(load_config(args))
    except LedgerClientError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    with client:
        if args.command == "ping":
            return cmd_ping(client, args.node, args.timeout)
        return cmd_nodes(client)


if __name__ == "__main__":
    sys.exit(main())
