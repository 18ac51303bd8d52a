"""Read-only queries answered by a single node."""

from __future__ import annotations

from typing import Any, Iterable

from ledger_client import codec
from ledger_client.execution.executor import Executable, ExecutionState, classify_precheck
from ledger_client.ids import AccountId, TransactionId
from ledger_client.network.node import Node
from ledger_client.receipt import TransactionReceipt, TransactionRecord
from ledger_client.status import RECEIPT_PENDING, RECEIPT_PENDING_PRECHECK, Status


RECEIPT_METHOD = "CryptoService/getTransactionReceipts"
RECORD_METHOD = "CryptoService/getTxRecordByTxID"
BALANCE_METHOD = "CryptoService/cryptoGetBalance"


class Query(Executable[dict[str, Any]]):
    """An opaque query; the decoded node response is the result."""

    def __init__(
        self,
        method: str,
        body: bytes = b"",
        *,
        node_account_ids: Iterable[AccountId | str] | None = None,
        **options: Any,
    ) -> None:
        super().__init__(node_account_ids=node_account_ids, **options)
        self.method = method
        self.body = body

    def _envelope(self, node: Node) -> dict[str, Any]:
        envelope: dict[str, Any] = {
            "node_account_id": str(node.account_id),
            "body": codec.b64(self.body),
        }
        if self.transaction_id is not None:
            envelope["transaction_id"] = str(self.transaction_id)
        return envelope

    def build_request(self, node: Node) -> bytes:
        return codec.encode(self._envelope(node))

    def map_response(self, node: Node, response: dict[str, Any]) -> dict[str, Any]:
        return response


class PingQuery(Query):
    """Cheapest possible round trip to one node: its own account balance."""

    def __init__(self, node_account_id: AccountId | str, **options: Any) -> None:
        account = AccountId.parse(node_account_id)
        super().__init__(
            BALANCE_METHOD,
            codec.encode({"account_id": str(account)}),
            node_account_ids=[account],
            **options,
        )


class TransactionReceiptQuery(Executable[TransactionReceipt]):
    """Polls for a receipt until consensus has been reached.

    "Not yet available" answers are retried with the request backoff; a
    receipt with any final status is returned as-is, failing or not.
    """

    method = RECEIPT_METHOD

    def __init__(self, transaction_id: TransactionId, **options: Any) -> None:
        super().__init__(**options)
        self.transaction_id = transaction_id

    def build_request(self, node: Node) -> bytes:
        return codec.encode({
            "node_account_id": str(node.account_id),
            "transaction_id": str(self.transaction_id),
        })

    def _receipt_status(self, response: dict[str, Any]) -> Status | None:
        receipt = response.get("receipt")
        if not isinstance(receipt, dict):
            return None
        return codec.parse_status(receipt.get("status"))

    def classify(self, status: Status, response: dict[str, Any]) -> ExecutionState:
        if status in RECEIPT_PENDING_PRECHECK:
            return ExecutionState.RETRY
        if status is not Status.OK:
            return classify_precheck(status)
        receipt_status = self._receipt_status(response)
        if receipt_status is None or receipt_status in RECEIPT_PENDING:
            return ExecutionState.RETRY
        return ExecutionState.SUCCESS

    def map_response(self, node: Node, response: dict[str, Any]) -> TransactionReceipt:
        return TransactionReceipt.from_dict(response["receipt"], self.transaction_id)


class TransactionRecordQuery(TransactionReceiptQuery):
    """Fetches the full record once its receipt is final."""

    method = RECORD_METHOD

    def _receipt_status(self, response: dict[str, Any]) -> Status | None:
        record = response.get("record")
        if not isinstance(record, dict) or not isinstance(record.get("receipt"), dict):
            return None
        return codec.parse_status(record["receipt"].get("status"))

    def map_response(self, node: Node, response: dict[str, Any]) -> TransactionRecord:
        return TransactionRecord.from_dict(response["record"], self.transaction_id)
