"""Error taxonomy for request execution.

Transport failures and allow-listed precheck statuses are retried by the
executor; everything else reaches the caller as one of these types.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ledger_client.ids import AccountId, TransactionId
    from ledger_client.status import Status


class LedgerClientError(Exception):
    """Base class for all client errors."""


class PreconditionError(LedgerClientError, ValueError):
    """A request or identity was malformed; raised before any network I/O."""


class AddressBookError(PreconditionError):
    """An address book could not be decoded."""


class ChannelError(LedgerClientError):
    """The node could not be reached or answered with something unusable.

    ``retryable`` errors rotate the request to another node; the others are
    surfaced immediately.
    """

    def __init__(self, message: str, *, endpoint: str | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.retryable = retryable

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} [{self.endpoint}]" if self.endpoint else base


class CertificateMismatchError(ChannelError):
    """The node presented a certificate that does not match the address book."""


class PrecheckStatusError(LedgerClientError):
    """The node rejected the request before submitting it to consensus."""

    def __init__(
        self,
        status: Status,
        transaction_id: TransactionId | None = None,
        node_id: AccountId | None = None,
    ) -> None:
        self.status = status
        self.transaction_id = transaction_id
        self.node_id = node_id
        super().__init__(str(self))

    def __str__(self) -> str:
        parts = [f"precheck failed with status {self.status.value}"]
        if self.transaction_id is not None:
            parts.append(f"transaction={self.transaction_id}")
        if self.node_id is not None:
            parts.append(f"node={self.node_id}")
        return " ".join(parts)


class ReceiptStatusError(LedgerClientError):
    """Consensus was reached but the receipt carries a failing status."""

    def __init__(self, receipt: Any, transaction_id: TransactionId | None = None) -> None:
        self.receipt = receipt
        self.transaction_id = transaction_id
        super().__init__(str(self))

    @property
    def status(self) -> Status:
        return self.receipt.status

    def __str__(self) -> str:
        txid = f" transaction={self.transaction_id}" if self.transaction_id is not None else ""
        return f"receipt for{txid} contained error status {self.receipt.status.value}"


class MaxAttemptsExceededError(LedgerClientError):
    """Every attempt allowed for the request failed."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"exceeded maximum attempts ({attempts}); last error: {last_error!r}")


class RequestTimeoutError(LedgerClientError, TimeoutError):
    """The overall request deadline elapsed before a terminal outcome."""


class NoHealthyNodesError(LedgerClientError):
    """Every node is backing off and the network refuses to ignore quarantine."""
