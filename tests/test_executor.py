"""Tests for the request executor: retries, failover and regeneration."""

from __future__ import annotations

import asyncio
import hashlib
from types import SimpleNamespace

import pytest

from conftest import unreachable
from ledger_client import codec
from ledger_client.config import ClientConfig
from ledger_client.errors import (
    ChannelError,
    MaxAttemptsExceededError,
    PrecheckStatusError,
    PreconditionError,
    RequestTimeoutError,
)
from ledger_client.execution.executor import ExecutionState, Executor, classify_precheck
from ledger_client.ids import AccountId, TransactionId
from ledger_client.network.network import Network
from ledger_client.query import Query
from ledger_client.status import Status
from ledger_client.transaction import Transaction, TransactionResponse

SUBMIT = "CryptoService/cryptoTransfer"
OPERATOR = SimpleNamespace(
    operator_account_id=AccountId(0, 0, 1001),
    operator_signer=lambda message: b"sig:" + message[:8],
)


def make_executor(network: Network, sleeper, **config) -> Executor:
    return Executor(network, ClientConfig(**config), sleep=sleeper)


def make_transaction(**kwargs) -> Transaction:
    tx = Transaction(SUBMIT, b"transfer 10", **kwargs)
    tx._prepare(OPERATOR)
    return tx


def status(name: str) -> dict:
    return {"status": name}


def endpoints(ledger, method: str = SUBMIT) -> list[str]:
    return [endpoint for endpoint, _, _ in ledger.calls_to(method)]


# ── Classification ───────────────────────────────────────────────

class TestClassifyPrecheck:
    @pytest.mark.parametrize("name, expected", [
        ("OK", ExecutionState.SUCCESS),
        ("BUSY", ExecutionState.RETRY),
        ("PLATFORM_NOT_ACTIVE", ExecutionState.SERVER_ERROR),
        ("PLATFORM_TRANSACTION_NOT_CREATED", ExecutionState.SERVER_ERROR),
        ("INVALID_SIGNATURE", ExecutionState.REQUEST_ERROR),
        ("INSUFFICIENT_PAYER_BALANCE", ExecutionState.REQUEST_ERROR),
    ])
    def test_allow_list(self, name, expected):
        assert classify_precheck(Status(name)) is expected

    def test_transaction_regenerates_on_stale_identity(self):
        tx = make_transaction()
        assert tx.classify(Status.TRANSACTION_EXPIRED, {}) is ExecutionState.REGENERATE
        assert tx.classify(Status.DUPLICATE_TRANSACTION, {}) is ExecutionState.REGENERATE


# ── Success and retry ────────────────────────────────────────────

class TestRetry:
    @pytest.mark.asyncio
    async def test_first_attempt_success(self, network, ledger, sleeper):
        tx = make_transaction()
        response = await make_executor(network, sleeper).execute(tx)
        assert isinstance(response, TransactionResponse)
        assert response.transaction_id == tx.transaction_id
        assert len(ledger.calls) == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_busy_backs_off_exponentially(self, network, ledger, sleeper):
        ledger.script(SUBMIT, status("BUSY"), status("BUSY"), status("BUSY"), status("OK"))
        await make_executor(network, sleeper).execute(make_transaction())
        assert sleeper.delays == [0.25, 0.5, 1.0]
        assert len(ledger.calls) == 4

    @pytest.mark.asyncio
    async def test_backoff_capped(self, network, ledger, sleeper):
        ledger.script(SUBMIT, *[status("BUSY")] * 5, status("OK"))
        await make_executor(network, sleeper, max_backoff=1.0).execute(make_transaction())
        assert sleeper.delays == [0.25, 0.5, 1.0, 1.0, 1.0]

    @pytest.mark.asyncio
    async def test_request_options_override_config(self, network, ledger, sleeper):
        ledger.script(SUBMIT, status("BUSY"), status("BUSY"), status("OK"))
        tx = make_transaction(min_backoff=0.1, max_backoff=0.15)
        await make_executor(network, sleeper).execute(tx)
        assert sleeper.delays == [0.1, 0.15]

    @pytest.mark.asyncio
    async def test_busy_does_not_penalise_node(self, network, ledger, sleeper):
        ledger.script(SUBMIT, status("BUSY"), status("OK"))
        tx = make_transaction(node_account_ids=["0.0.3"])
        await make_executor(network, sleeper).execute(tx)
        node = network.nodes_for_account(AccountId(0, 0, 3))[0]
        assert node.is_healthy()
        assert node.bad_attempts == 0


# ── Failover ─────────────────────────────────────────────────────

class TestFailover:
    @pytest.mark.asyncio
    async def test_unreachable_node_rotates(self, network, ledger, sleeper):
        ledger.script(SUBMIT, unreachable("10.0.0.1:"))
        tx = make_transaction(node_account_ids=["0.0.3", "0.0.4"])
        response = await make_executor(network, sleeper).execute(tx)

        assert endpoints(ledger) == ["10.0.0.1:50211", "10.0.0.2:50211"]
        assert response.node_id == AccountId(0, 0, 4)
        failed = network.nodes_for_account(AccountId(0, 0, 3))[0]
        assert not failed.is_healthy()
        assert failed.bad_attempts == 1

    @pytest.mark.asyncio
    async def test_server_error_penalises_and_rotates(self, network, ledger, sleeper):
        ledger.script(SUBMIT, status("PLATFORM_NOT_ACTIVE"), status("OK"))
        tx = make_transaction(node_account_ids=["0.0.3", "0.0.4"])
        response = await make_executor(network, sleeper).execute(tx)

        assert response.node_id == AccountId(0, 0, 4)
        assert not network.nodes_for_account(AccountId(0, 0, 3))[0].is_healthy()
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_malformed_response_treated_as_node_failure(self, network, ledger, sleeper):
        ledger.script(SUBMIT, b"<html>bad gateway</html>", status("OK"))
        tx = make_transaction(node_account_ids=["0.0.3", "0.0.4"])
        response = await make_executor(network, sleeper).execute(tx)
        assert response.node_id == AccountId(0, 0, 4)

    @pytest.mark.asyncio
    async def test_explicit_single_node_never_switches(self, network, ledger, sleeper):
        ledger.script(SUBMIT, status("BUSY"), status("BUSY"), status("OK"))
        tx = make_transaction(node_account_ids=["0.0.5"])
        await make_executor(network, sleeper).execute(tx)
        assert endpoints(ledger) == ["10.0.0.3:50211"] * 3

    @pytest.mark.asyncio
    async def test_waits_out_backoff_when_every_candidate_is_down(self, network, ledger, sleeper):
        ledger.script(SUBMIT, ChannelError("connection refused"), status("OK"))
        tx = make_transaction(node_account_ids=["0.0.3"])
        response = await make_executor(network, sleeper).execute(tx)
        assert response.node_id == AccountId(0, 0, 3)
        assert len(sleeper.delays) == 1
        assert 0 < sleeper.delays[0] <= 8.0


# ── Terminal outcomes ────────────────────────────────────────────

class TestTerminal:
    @pytest.mark.asyncio
    async def test_precheck_error_carries_context(self, network, ledger, sleeper):
        ledger.script(SUBMIT, status("INVALID_SIGNATURE"))
        tx = make_transaction(node_account_ids=["0.0.6"])
        with pytest.raises(PrecheckStatusError) as exc_info:
            await make_executor(network, sleeper).execute(tx)

        err = exc_info.value
        assert err.status is Status.INVALID_SIGNATURE
        assert err.transaction_id == tx.transaction_id
        assert err.node_id == AccountId(0, 0, 6)
        assert len(ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_max_attempts(self, network, ledger, sleeper):
        ledger.script(SUBMIT, status("BUSY"))
        with pytest.raises(MaxAttemptsExceededError) as exc_info:
            await make_executor(network, sleeper).execute(make_transaction(max_attempts=3))

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, PrecheckStatusError)
        assert exc_info.value.last_error.status is Status.BUSY
        assert len(ledger.calls) == 3

    @pytest.mark.asyncio
    async def test_max_attempts_from_config(self, network, ledger, sleeper):
        ledger.script(SUBMIT, ChannelError("connection refused"))
        with pytest.raises(MaxAttemptsExceededError) as exc_info:
            await make_executor(network, sleeper, max_attempts=4).execute(make_transaction())
        assert isinstance(exc_info.value.last_error, ChannelError)
        assert len(ledger.calls) == 4

    @pytest.mark.asyncio
    async def test_non_retryable_channel_error_surfaces(self, network, ledger, sleeper):
        ledger.script(SUBMIT, ChannelError("bad request", retryable=False), status("OK"))
        with pytest.raises(ChannelError) as exc_info:
            await make_executor(network, sleeper).execute(make_transaction())
        assert not exc_info.value.retryable
        assert len(ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_status_is_terminal(self, network, ledger, sleeper):
        ledger.script(SUBMIT, status("NOT_A_REAL_STATUS"))
        with pytest.raises(ChannelError):
            await make_executor(network, sleeper).execute(make_transaction())

    @pytest.mark.asyncio
    async def test_overall_timeout(self, network, ledger):
        ledger.script(SUBMIT, status("BUSY"))
        executor = Executor(network, ClientConfig(min_backoff=1.0))
        with pytest.raises(RequestTimeoutError) as exc_info:
            await executor.execute(make_transaction(), timeout=0.05)
        assert isinstance(exc_info.value, TimeoutError)

    @pytest.mark.asyncio
    async def test_empty_network(self, sleeper):
        with pytest.raises(PreconditionError):
            await make_executor(Network(), sleeper).execute(Query("Service/method"))

    def test_invalid_request_options(self):
        with pytest.raises(PreconditionError):
            Query("Service/method", max_attempts=0)
        with pytest.raises(PreconditionError):
            Query("Service/method", min_backoff=2.0, max_backoff=1.0)
        with pytest.raises(PreconditionError):
            Query("Service/method", node_account_ids=[])


# ── Transaction identity ─────────────────────────────────────────

class TestRegeneration:
    @pytest.mark.asyncio
    async def test_expired_identity_regenerated(self, network, ledger, sleeper):
        ledger.script(SUBMIT, status("TRANSACTION_EXPIRED"), status("OK"))
        tx = make_transaction()
        original = tx.transaction_id
        response = await make_executor(network, sleeper).execute(tx)

        sent = [request["transaction_id"] for _, _, request in ledger.calls]
        assert sent[0] == str(original)
        assert sent[1] != sent[0]
        assert response.transaction_id != original
        assert response.transaction_id.account_id == original.account_id

    @pytest.mark.asyncio
    async def test_pinned_identity_not_regenerated(self, network, ledger, sleeper):
        ledger.script(SUBMIT, status("DUPLICATE_TRANSACTION"), status("OK"))
        tx = make_transaction(transaction_id="0.0.1001@1700000000.000000000")
        with pytest.raises(PrecheckStatusError) as exc_info:
            await make_executor(network, sleeper).execute(tx)
        assert exc_info.value.status is Status.DUPLICATE_TRANSACTION
        assert str(tx.transaction_id) == "0.0.1001@1700000000.000000000"
        assert len(ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_regeneration_disabled(self, network, ledger, sleeper):
        ledger.script(SUBMIT, status("TRANSACTION_EXPIRED"))
        tx = make_transaction(regenerate_transaction_id=False)
        with pytest.raises(PrecheckStatusError):
            await make_executor(network, sleeper).execute(tx)

    def test_no_operator_and_no_id(self):
        tx = Transaction(SUBMIT, b"x")
        with pytest.raises(PreconditionError):
            tx._prepare(SimpleNamespace(operator_account_id=None, operator_signer=None))


# ── Envelope ─────────────────────────────────────────────────────

class TestEnvelope:
    @pytest.mark.asyncio
    async def test_signed_envelope_and_hash(self, network, ledger, sleeper):
        tx = make_transaction(node_account_ids=["0.0.4"], memo="rent")
        response = await make_executor(network, sleeper).execute(tx)

        _, method, request = ledger.calls[0]
        assert method == SUBMIT
        assert request["node_account_id"] == "0.0.4"
        assert request["memo"] == "rent"
        assert codec.unb64(request["body"]) == b"transfer 10"
        assert codec.unb64(request["signature"]).startswith(b"sig:")
        assert response.transaction_hash == hashlib.sha384(codec.encode(request)).digest()

    @pytest.mark.asyncio
    async def test_query_returns_response(self, network, ledger, sleeper):
        ledger.script("Service/info", {"status": "OK", "info": {"balance": 5}})
        query = Query("Service/info", b"\x01", node_account_ids=["0.0.3"])
        result = await make_executor(network, sleeper).execute(query)
        assert result["info"] == {"balance": 5}
        assert codec.unb64(ledger.calls[0][2]["body"]) == b"\x01"
        assert "transaction_id" not in ledger.calls[0][2]

    def test_transaction_id_string_form(self):
        tx = Transaction(SUBMIT, b"x", transaction_id="0.0.5@1.5")
        assert tx.transaction_id == TransactionId(AccountId(0, 0, 5), 1, 500_000_000)


# ── Network changes during a request ─────────────────────────────

class TestNetworkChanges:
    @pytest.mark.asyncio
    async def test_transport_switch_during_backoff(self, network, ledger):
        async def switch_then_sleep(delay: float) -> None:
            await network.set_transport_security(True)

        ledger.script("Service/info", status("BUSY"), status("OK"))
        query = Query("Service/info", node_account_ids=["0.0.3"])
        await Executor(network, ClientConfig(), sleep=switch_then_sleep).execute(query)

        assert endpoints(ledger, "Service/info") == ["10.0.0.1:50211", "10.0.0.1:50212"]
        plaintext = [ch for ch in ledger.channels if not ch.secure]
        assert [ch.closed for ch in plaintext] == [1]
        assert all(n.secure for n in network.nodes)

    @pytest.mark.asyncio
    async def test_dropped_node_is_not_reused(self, network, ledger):
        async def drop_then_sleep(delay: float) -> None:
            await network.set_network({"10.0.0.9:50211": "0.0.3"})

        ledger.script("Service/info", status("BUSY"), status("OK"))
        query = Query("Service/info", node_account_ids=["0.0.3"])
        await Executor(network, ClientConfig(), sleep=drop_then_sleep).execute(query)

        assert endpoints(ledger, "Service/info") == ["10.0.0.1:50211", "10.0.0.9:50211"]
        assert ledger.channels[0].closed == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_across_transport_switch(self, network, ledger):
        stray: list[str] = []
        first_round = asyncio.Event()

        def respond(endpoint: str, request: dict) -> dict:
            if endpoint not in {str(n.address) for n in network.nodes}:
                stray.append(endpoint)
            if len(ledger.calls) >= 6:
                first_round.set()
            return status("BUSY") if len(ledger.calls) <= 12 else status("OK")

        async def switch() -> None:
            await first_round.wait()
            await network.set_transport_security(True)

        ledger.script("Service/info", respond)
        executor = Executor(network, ClientConfig(min_backoff=0.01, max_backoff=0.02))
        results = await asyncio.gather(
            *(executor.execute(Query("Service/info")) for _ in range(6)),
            switch(),
        )

        assert all(r["status"] == "OK" for r in results[:6])
        assert stray == []
        called = {endpoint for endpoint, _, _ in ledger.calls}
        assert any(e.endswith(":50211") for e in called)
        assert any(e.endswith(":50212") for e in called)
        assert all(ch.closed == 1 for ch in ledger.channels if not ch.secure)
