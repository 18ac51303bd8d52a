"""Networking layer — endpoints, address books, nodes and node selection."""

from ledger_client.network.address_book import NodeAddress, NodeAddressBook, parse_address_book
from ledger_client.network.channel import Channel, HttpChannel
from ledger_client.network.endpoint import Endpoint
from ledger_client.network.network import Network, UnhealthyPolicy
from ledger_client.network.node import Node

__all__ = [
    "Channel",
    "Endpoint",
    "HttpChannel",
    "Network",
    "Node",
    "NodeAddress",
    "NodeAddressBook",
    "UnhealthyPolicy",
    "parse_address_book",
]
