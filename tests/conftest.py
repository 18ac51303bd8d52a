"""Shared fixtures: an in-memory ledger standing in for node channels."""

from __future__ import annotations

import json
from typing import Any, Callable

import pytest

from ledger_client.client import Client
from ledger_client.config import ClientConfig
from ledger_client.errors import ChannelError
from ledger_client.network.endpoint import Endpoint
from ledger_client.network.network import Network


def make_network_map(n: int) -> dict[str, str]:
    """``n`` nodes on 10.0.0.x, accounts 0.0.3 upwards."""
    return {f"10.0.0.{i + 1}:50211": f"0.0.{i + 3}" for i in range(n)}


class FakeChannel:
    def __init__(self, ledger: FakeLedger, endpoint: Endpoint, secure: bool, check: Any) -> None:
        self.ledger = ledger
        self.endpoint = endpoint
        self.secure = secure
        self.certificate_check = check
        self.closed = 0

    async def invoke(self, method: str, payload: bytes, timeout: float | None = None) -> bytes:
        return self.ledger.answer(str(self.endpoint), method, json.loads(payload))

    async def close(self) -> None:
        self.closed += 1


class FakeLedger:
    """Scripted responses per method; the last scripted response repeats.

    A scripted response is a response dict, an exception to raise, or a
    callable ``(endpoint, request) -> dict | Exception``.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.channels: list[FakeChannel] = []
        self._scripts: dict[str, list[Any]] = {}

    def factory(self, endpoint: Endpoint, secure: bool, check: Any = None) -> FakeChannel:
        channel = FakeChannel(self, endpoint, secure, check)
        self.channels.append(channel)
        return channel

    def script(self, method: str, *responses: Any) -> None:
        self._scripts.setdefault(method, []).extend(responses)

    def answer(self, endpoint: str, method: str, request: dict[str, Any]) -> bytes:
        self.calls.append((endpoint, method, request))
        queue = self._scripts.get(method)
        if queue:
            response = queue.pop(0) if len(queue) > 1 else queue[0]
        else:
            response = {"status": "OK"}
        if callable(response):
            response = response(endpoint, request)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, bytes):
            return response
        return json.dumps(response).encode()

    def calls_to(self, method: str) -> list[tuple[str, str, dict[str, Any]]]:
        return [c for c in self.calls if c[1] == method]


def unreachable(endpoint_prefix: str) -> Callable[[str, dict[str, Any]], Any]:
    """Response script: nodes whose endpoint starts with the prefix are down."""
    def respond(endpoint: str, request: dict[str, Any]) -> Any:
        if endpoint.startswith(endpoint_prefix):
            return ChannelError("connection refused", endpoint=endpoint)
        return {"status": "OK"}
    return respond


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def network(ledger: FakeLedger) -> Network:
    return Network.for_network(make_network_map(6), channel_factory=ledger.factory)


@pytest.fixture
def client(ledger: FakeLedger, sleeper: SleepRecorder):
    c = Client.for_network(
        make_network_map(3),
        ClientConfig(network=make_network_map(3), request_timeout=5.0),
        channel_factory=ledger.factory,
        sleep=sleeper,
    )
    c.set_operator("0.0.1001", lambda message: b"sig:" + message[:8])
    yield c
    c.close()
