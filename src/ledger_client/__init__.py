"""Client library for submitting transactions and queries to a ledger network."""

from ledger_client.client import Client
from ledger_client.config import ClientConfig
from ledger_client.errors import (
    AddressBookError,
    CertificateMismatchError,
    ChannelError,
    LedgerClientError,
    MaxAttemptsExceededError,
    NoHealthyNodesError,
    PrecheckStatusError,
    PreconditionError,
    ReceiptStatusError,
    RequestTimeoutError,
)
from ledger_client.ids import AccountId, LedgerId, TransactionId
from ledger_client.network import Endpoint, Network, Node, NodeAddress, NodeAddressBook
from ledger_client.query import PingQuery, Query, TransactionReceiptQuery, TransactionRecordQuery
from ledger_client.receipt import TransactionReceipt, TransactionRecord
from ledger_client.status import Status
from ledger_client.transaction import Transaction, TransactionResponse

__version__ = "0.1.0"

__all__ = [
    "AccountId",
    "AddressBookError",
    "CertificateMismatchError",
    "ChannelError",
    "Client",
    "ClientConfig",
    "Endpoint",
    "LedgerClientError",
    "LedgerId",
    "MaxAttemptsExceededError",
    "Network",
    "NoHealthyNodesError",
    "Node",
    "NodeAddress",
    "NodeAddressBook",
    "PingQuery",
    "PrecheckStatusError",
    "PreconditionError",
    "Query",
    "ReceiptStatusError",
    "RequestTimeoutError",
    "Status",
    "Transaction",
    "TransactionId",
    "TransactionReceipt",
    "TransactionReceiptQuery",
    "TransactionRecord",
    "TransactionRecordQuery",
    "TransactionResponse",
]
