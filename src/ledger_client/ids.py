"""Ledger identities: accounts, transactions, and ledgers."""

from __future__ import annotations

import random
import re
import time
from dataclasses import dataclass

from ledger_client.errors import PreconditionError

_ACCOUNT_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
_TXID_RE = re.compile(r"^(\d+\.\d+\.\d+)@(\d+)\.(\d+)$")

# Valid-start is backdated by a random amount in this window (seconds)
# so small clock skew between client and node does not expire it.
VALID_START_BACKDATE = (5.0, 8.0)


@dataclass(frozen=True, order=True)
class AccountId:
    """Ledger account identity ``shard.realm.num``."""

    shard: int
    realm: int
    num: int

    @classmethod
    def from_string(cls, text: str) -> AccountId:
        match = _ACCOUNT_RE.match(text.strip()) if isinstance(text, str) else None
        if match is None:
            raise PreconditionError(f"malformed account id: {text!r}")
        return cls(*(int(part) for part in match.groups()))

    @classmethod
    def parse(cls, value: AccountId | str) -> AccountId:
        """Accept either an AccountId or its textual form."""
        if isinstance(value, AccountId):
            return value
        return cls.from_string(value)

    def __str__(self) -> str:
        return f"{self.shard}.{self.realm}.{self.num}"


@dataclass(frozen=True)
class TransactionId:
    """Payer account plus the instant the transaction becomes valid."""

    account_id: AccountId
    valid_start_seconds: int
    valid_start_nanos: int

    @classmethod
    def generate(cls, account_id: AccountId) -> TransactionId:
        backdate_ns = int(random.uniform(*VALID_START_BACKDATE) * 1_000_000_000)
        now_ns = time.time_ns() - backdate_ns
        return cls(account_id, now_ns // 1_000_000_000, now_ns % 1_000_000_000)

    @classmethod
    def from_string(cls, text: str) -> TransactionId:
        match = _TXID_RE.match(text.strip()) if isinstance(text, str) else None
        if match is None:
            raise PreconditionError(f"malformed transaction id: {text!r}")
        account, seconds, nanos = match.groups()
        if len(nanos) > 9:
            raise PreconditionError(f"malformed transaction id: {text!r}")
        return cls(AccountId.from_string(account), int(seconds), int(nanos.ljust(9, "0")))

    def __str__(self) -> str:
        return f"{self.account_id}@{self.valid_start_seconds}.{self.valid_start_nanos:09d}"


@dataclass(frozen=True)
class LedgerId:
    """Name of a ledger; known ledgers ship with a bundled address book."""

    name: str

    MAINNET = "mainnet"
    TESTNET = "testnet"
    PREVIEWNET = "previewnet"

    @property
    def is_known_network(self) -> bool:
        return self.name in (self.MAINNET, self.TESTNET, self.PREVIEWNET)

    def __str__(self) -> str:
        return self.name
