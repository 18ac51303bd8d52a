"""Transactions and the responses that lead to their receipts."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable

from ledger_client import codec
from ledger_client.errors import PreconditionError, ReceiptStatusError
from ledger_client.execution.executor import Executable, ExecutionState, classify_precheck, with_deadline
from ledger_client.ids import AccountId, TransactionId
from ledger_client.network.node import Node
from ledger_client.query import TransactionReceiptQuery, TransactionRecordQuery
from ledger_client.receipt import TransactionReceipt, TransactionRecord
from ledger_client.status import STALE_IDENTITY, Status

if TYPE_CHECKING:
    from ledger_client.client import Client

logger = logging.getLogger(__name__)

# Resubmissions after a THROTTLED_AT_CONSENSUS receipt.
MAX_THROTTLE_RETRIES = 5
THROTTLE_INITIAL_BACKOFF = 0.25
THROTTLE_MAX_BACKOFF = 8.0


class Transaction(Executable["TransactionResponse"]):
    """A pre-built transaction body delivered to a node method.

    The body is opaque. Each attempt wraps it in an envelope naming the
    transaction id and target node, signed by the client's operator.

    Args:
        method: Node method that accepts this kind of transaction.
        body: Serialized transaction body.
        transaction_id: Pin the identity; disables automatic regeneration.
        regenerate_transaction_id: Allow a fresh identity when the node
            reports the current one as expired or duplicate.
    """

    def __init__(
        self,
        method: str,
        body: bytes,
        *,
        transaction_id: TransactionId | str | None = None,
        node_account_ids: Iterable[AccountId | str] | None = None,
        memo: str = "",
        regenerate_transaction_id: bool = True,
        **options: Any,
    ) -> None:
        super().__init__(node_account_ids=node_account_ids, **options)
        if not method:
            raise PreconditionError("transaction method is required")
        self.method = method
        self.body = body
        self.memo = memo
        if isinstance(transaction_id, str):
            transaction_id = TransactionId.from_string(transaction_id)
        self.transaction_id = transaction_id
        self._regenerate = regenerate_transaction_id and transaction_id is None
        self._signer = None
        self._hashes: dict[AccountId, bytes] = {}

    def _prepare(self, client: Client) -> None:
        self._signer = client.operator_signer
        if self.transaction_id is None:
            if client.operator_account_id is None:
                raise PreconditionError("transaction id is not set and the client has no operator")
            self.transaction_id = TransactionId.generate(client.operator_account_id)

    def regenerate_transaction_id(self, force: bool = False) -> bool:
        """Replace the transaction id with a fresh one for the same payer."""
        if self.transaction_id is None or not (self._regenerate or force):
            return False
        previous = self.transaction_id
        fresh = TransactionId.generate(previous.account_id)
        while fresh == previous:
            fresh = TransactionId.generate(previous.account_id)
        self.transaction_id = fresh
        self._hashes.clear()
        return True

    def build_request(self, node: Node) -> bytes:
        if self.transaction_id is None:
            raise PreconditionError("transaction id is not set")
        envelope: dict[str, Any] = {
            "transaction_id": str(self.transaction_id),
            "node_account_id": str(node.account_id),
            "body": codec.b64(self.body),
            "memo": self.memo,
        }
        if self._signer is not None:
            envelope["signature"] = codec.b64(self._signer(codec.encode(envelope)))
        signed = codec.encode(envelope)
        self._hashes[node.account_id] = hashlib.sha384(signed).digest()
        return signed

    def classify(self, status: Status, response: dict[str, Any]) -> ExecutionState:
        if status in STALE_IDENTITY:
            return ExecutionState.REGENERATE
        return classify_precheck(status)

    def map_response(self, node: Node, response: dict[str, Any]) -> TransactionResponse:
        return TransactionResponse(
            node_id=node.account_id,
            transaction_id=self.transaction_id,
            transaction_hash=self._hashes.get(node.account_id, b""),
            transaction=self,
        )


@dataclass
class TransactionResponse:
    """A node accepted the transaction at precheck.

    The consensus outcome is obtained separately through the receipt.
    ``validate_status`` controls whether a failing receipt raises.
    """

    node_id: AccountId
    transaction_id: TransactionId
    transaction_hash: bytes
    transaction: Transaction | None = field(default=None, repr=False)
    validate_status: bool = True

    def get_receipt_query(self) -> TransactionReceiptQuery:
        return TransactionReceiptQuery(self.transaction_id, node_account_ids=[self.node_id])

    def get_record_query(self, transaction_id: TransactionId | None = None) -> TransactionRecordQuery:
        if transaction_id is None or transaction_id == self.transaction_id:
            return TransactionRecordQuery(self.transaction_id, node_account_ids=[self.node_id])
        return TransactionRecordQuery(transaction_id)

    # ── Receipt ──────────────────────────────────────────────────

    def get_receipt(self, client: Client, timeout: float | None = None) -> TransactionReceipt:
        """Block for the receipt; ``timeout`` bounds all polls and resubmissions together."""
        return client.run(self._get_receipt(client, timeout))

    async def get_receipt_async(self, client: Client, timeout: float | None = None) -> TransactionReceipt:
        return await client.run_async(self._get_receipt(client, timeout))

    async def _get_receipt(self, client: Client, timeout: float | None) -> TransactionReceipt:
        timeout = client.config.request_timeout if timeout is None else timeout
        return await with_deadline(self._poll_receipt(client, timeout), timeout, "receipt")

    async def _poll_receipt(self, client: Client, timeout: float) -> TransactionReceipt:
        """Poll the receipt, resubmitting while consensus throttles.

        A THROTTLED_AT_CONSENSUS receipt triggers up to
        ``MAX_THROTTLE_RETRIES`` resubmissions under fresh identities, each
        preceded by an exponential backoff. Other failing statuses raise
        immediately.
        """
        receipt_query = self.get_receipt_query()
        try:
            receipt = await receipt_query._execute(client, timeout)
            return receipt.validate_status(self.validate_status)
        except ReceiptStatusError as exc:
            if exc.status is not Status.THROTTLED_AT_CONSENSUS or self.transaction is None:
                raise
            last_error = exc

        backoff = THROTTLE_INITIAL_BACKOFF
        for attempt in range(1, MAX_THROTTLE_RETRIES + 1):
            delay = min(backoff, THROTTLE_MAX_BACKOFF)
            logger.info(
                "Transaction %s throttled at consensus; resubmitting in %.2fs (%d/%d)",
                last_error.transaction_id, delay, attempt, MAX_THROTTLE_RETRIES,
            )
            await client.sleep(delay)
            backoff *= 2
            try:
                return await self._resubmit(client, timeout)
            except ReceiptStatusError as exc:
                if exc.status is not Status.THROTTLED_AT_CONSENSUS:
                    raise
                last_error = exc
        raise last_error

    async def _resubmit(self, client: Client, timeout: float) -> TransactionReceipt:
        transaction = self.transaction
        transaction.regenerate_transaction_id(force=True)
        response = await transaction._execute(client, timeout)
        receipt = await TransactionReceiptQuery(
            response.transaction_id, node_account_ids=[response.node_id],
        )._execute(client, timeout)
        return receipt.validate_status(self.validate_status)

    # ── Record ───────────────────────────────────────────────────

    def get_record(self, client: Client, timeout: float | None = None) -> TransactionRecord:
        return client.run(self._get_record(client, timeout))

    async def get_record_async(self, client: Client, timeout: float | None = None) -> TransactionRecord:
        return await client.run_async(self._get_record(client, timeout))

    async def _get_record(self, client: Client, timeout: float | None) -> TransactionRecord:
        timeout = client.config.request_timeout if timeout is None else timeout
        return await with_deadline(self._fetch_record(client, timeout), timeout, "record")

    async def _fetch_record(self, client: Client, timeout: float) -> TransactionRecord:
        receipt = await self._poll_receipt(client, timeout)
        return await self.get_record_query(receipt.transaction_id)._execute(client, timeout)
