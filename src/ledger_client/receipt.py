"""Consensus outcomes: receipts and records."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ledger_client import codec
from ledger_client.errors import ReceiptStatusError
from ledger_client.ids import AccountId, TransactionId
from ledger_client.status import Status


@dataclass
class TransactionReceipt:
    """Consensus status of a transaction plus any entity it created."""

    status: Status
    transaction_id: TransactionId | None = None
    account_id: AccountId | None = None
    entity_ids: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any], transaction_id: TransactionId | None = None) -> TransactionReceipt:
        account = data.get("account_id")
        return cls(
            status=codec.parse_status(data.get("status")),
            transaction_id=transaction_id,
            account_id=AccountId.from_string(account) if account else None,
            entity_ids={
                k: str(v) for k, v in data.items()
                if k.endswith("_id") and k != "account_id" and v
            },
        )

    def validate_status(self, validate: bool = True) -> TransactionReceipt:
        """Return self, or raise if validating and the status is not SUCCESS."""
        if validate and self.status is not Status.SUCCESS:
            raise ReceiptStatusError(self, self.transaction_id)
        return self


@dataclass
class TransactionRecord:
    """Receipt plus the consensus details of an executed transaction."""

    receipt: TransactionReceipt
    transaction_id: TransactionId | None = None
    transaction_hash: bytes = b""
    consensus_timestamp: str | None = None
    transaction_fee: int = 0
    memo: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any], transaction_id: TransactionId | None = None) -> TransactionRecord:
        return cls(
            receipt=TransactionReceipt.from_dict(data.get("receipt", {}), transaction_id),
            transaction_id=transaction_id,
            transaction_hash=bytes.fromhex(data.get("transaction_hash", "")),
            consensus_timestamp=data.get("consensus_timestamp"),
            transaction_fee=int(data.get("transaction_fee", 0)),
            memo=data.get("memo", ""),
        )
