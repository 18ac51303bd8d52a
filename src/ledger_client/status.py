"""Ledger response codes and their retry classification."""

from __future__ import annotations

from enum import Enum


class Status(str, Enum):
    """Response code returned by a node at precheck or in a receipt."""

    OK = "OK"
    INVALID_TRANSACTION = "INVALID_TRANSACTION"
    PAYER_ACCOUNT_NOT_FOUND = "PAYER_ACCOUNT_NOT_FOUND"
    INVALID_NODE_ACCOUNT = "INVALID_NODE_ACCOUNT"
    TRANSACTION_EXPIRED = "TRANSACTION_EXPIRED"
    INVALID_TRANSACTION_START = "INVALID_TRANSACTION_START"
    INVALID_TRANSACTION_DURATION = "INVALID_TRANSACTION_DURATION"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    MEMO_TOO_LONG = "MEMO_TOO_LONG"
    INSUFFICIENT_TX_FEE = "INSUFFICIENT_TX_FEE"
    INSUFFICIENT_PAYER_BALANCE = "INSUFFICIENT_PAYER_BALANCE"
    DUPLICATE_TRANSACTION = "DUPLICATE_TRANSACTION"
    BUSY = "BUSY"
    NOT_SUPPORTED = "NOT_SUPPORTED"
    INVALID_ACCOUNT_ID = "INVALID_ACCOUNT_ID"
    INVALID_TRANSACTION_ID = "INVALID_TRANSACTION_ID"
    RECEIPT_NOT_FOUND = "RECEIPT_NOT_FOUND"
    RECORD_NOT_FOUND = "RECORD_NOT_FOUND"
    UNKNOWN = "UNKNOWN"
    SUCCESS = "SUCCESS"
    FAIL_INVALID = "FAIL_INVALID"
    FAIL_FEE = "FAIL_FEE"
    FAIL_BALANCE = "FAIL_BALANCE"
    INVALID_PAYER_SIGNATURE = "INVALID_PAYER_SIGNATURE"
    PLATFORM_TRANSACTION_NOT_CREATED = "PLATFORM_TRANSACTION_NOT_CREATED"
    PLATFORM_NOT_ACTIVE = "PLATFORM_NOT_ACTIVE"
    THROTTLED_AT_CONSENSUS = "THROTTLED_AT_CONSENSUS"
    TRANSACTION_OVERSIZE = "TRANSACTION_OVERSIZE"
    ACCOUNT_DELETED = "ACCOUNT_DELETED"


# Node cannot serve right now; rotate away and penalise the node.
NODE_SERVER_ERRORS = frozenset({
    Status.PLATFORM_TRANSACTION_NOT_CREATED,
    Status.PLATFORM_NOT_ACTIVE,
})

# Same request is expected to succeed after a delay.
TRANSIENT_PRECHECK = frozenset({Status.BUSY})

# The transaction identity is stale and must be regenerated.
STALE_IDENTITY = frozenset({
    Status.TRANSACTION_EXPIRED,
    Status.DUPLICATE_TRANSACTION,
})

# Precheck answers to a receipt/record query meaning "ask again later".
RECEIPT_PENDING_PRECHECK = frozenset({
    Status.UNKNOWN,
    Status.RECEIPT_NOT_FOUND,
    Status.RECORD_NOT_FOUND,
    Status.BUSY,
})

# Receipt statuses meaning consensus has not been reached yet.
RECEIPT_PENDING = frozenset({Status.UNKNOWN, Status.OK, Status.BUSY})
