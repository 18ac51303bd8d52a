"""Client — the entry point tying configuration, network and execution together.

All network I/O runs on one asyncio loop owned by the client and driven by
a daemon worker thread. Blocking calls wait on that loop; async callers on
any other loop await a wrapped future, so both paths share the same
selection and retry logic.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Coroutine, Mapping, TypeVar

from ledger_client.config import ClientConfig
from ledger_client.execution.executor import Executor, Sleep
from ledger_client.ids import AccountId, LedgerId
from ledger_client.network.address_book import NodeAddress, NodeAddressBook
from ledger_client.network.channel import ChannelFactory
from ledger_client.network.network import Network
from ledger_client.query import PingQuery

logger = logging.getLogger(__name__)

T = TypeVar("T")

Signer = Callable[[bytes], bytes]


class Client:
    """Submits transactions and queries to a ledger network."""

    def __init__(
        self,
        network: Network,
        config: ClientConfig | None = None,
        *,
        sleep: Sleep | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.network = network
        self.sleep: Sleep = sleep or asyncio.sleep
        self.executor = Executor(network, self.config, sleep=self.sleep)
        self.operator_account_id: AccountId | None = None
        self.operator_signer: Signer | None = None
        if self.config.operator_account_id:
            self.operator_account_id = AccountId.from_string(self.config.operator_account_id)

        self._closed = False
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="ledger-client-io", daemon=True)
        self._thread.start()

    # ── Construction ─────────────────────────────────────────────

    @staticmethod
    def _network_options(config: ClientConfig, channel_factory: ChannelFactory | None) -> dict[str, Any]:
        return {
            "transport_security": config.transport_security,
            "verify_certificates": config.verify_certificates,
            "max_nodes_per_request": config.max_nodes_per_request,
            "unhealthy_policy": config.all_unhealthy_policy,
            "node_min_backoff": config.node_min_backoff,
            "node_max_backoff": config.node_max_backoff,
            "close_timeout": config.close_timeout,
            "channel_factory": channel_factory,
        }

    @classmethod
    def for_name(
        cls,
        name: str,
        config: ClientConfig | None = None,
        *,
        channel_factory: ChannelFactory | None = None,
        sleep: Sleep | None = None,
    ) -> Client:
        """Client for a known ledger (mainnet, testnet, previewnet)."""
        config = config or ClientConfig(network=name)
        network = Network.for_ledger(LedgerId(name), **cls._network_options(config, channel_factory))
        return cls(network, config, sleep=sleep)

    @classmethod
    def for_mainnet(cls, config: ClientConfig | None = None, **kwargs: Any) -> Client:
        return cls.for_name(LedgerId.MAINNET, config, **kwargs)

    @classmethod
    def for_testnet(cls, config: ClientConfig | None = None, **kwargs: Any) -> Client:
        return cls.for_name(LedgerId.TESTNET, config, **kwargs)

    @classmethod
    def for_previewnet(cls, config: ClientConfig | None = None, **kwargs: Any) -> Client:
        return cls.for_name(LedgerId.PREVIEWNET, config, **kwargs)

    @classmethod
    def for_network(
        cls,
        network: Mapping[str, AccountId | str],
        config: ClientConfig | None = None,
        *,
        channel_factory: ChannelFactory | None = None,
        sleep: Sleep | None = None,
    ) -> Client:
        """Client for a custom ``address -> node account`` mapping."""
        config = config or ClientConfig(network={str(k): str(v) for k, v in network.items()})
        return cls(
            Network.for_network(network, **cls._network_options(config, channel_factory)),
            config,
            sleep=sleep,
        )

    @classmethod
    def from_config(
        cls,
        source: Any = None,
        *,
        environ: Mapping[str, str] | None = None,
        channel_factory: ChannelFactory | None = None,
        sleep: Sleep | None = None,
    ) -> Client:
        """Client from a JSON file path or dict plus ``LEDGER_CLIENT_*`` overrides."""
        config = ClientConfig.load(source, environ)
        return cls.for_config(config, channel_factory=channel_factory, sleep=sleep)

    @classmethod
    def for_config(
        cls,
        config: ClientConfig,
        *,
        channel_factory: ChannelFactory | None = None,
        sleep: Sleep | None = None,
    ) -> Client:
        """Client for the network named or mapped in ``config.network``."""
        if isinstance(config.network, str):
            return cls.for_name(config.network, config, channel_factory=channel_factory, sleep=sleep)
        return cls.for_network(config.network, config, channel_factory=channel_factory, sleep=sleep)

    # ── Event loop ───────────────────────────────────────────────

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def submit(self, coro: Coroutine[Any, Any, T]) -> Future[T]:
        """Schedule ``coro`` on the client loop."""
        if self._closed:
            coro.close()
            raise RuntimeError("client is closed")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run ``coro`` on the client loop and block for its result."""
        if threading.current_thread() is self._thread:
            coro.close()
            raise RuntimeError("blocking call made from the client's own event loop; use the async API")
        return self.submit(coro).result()

    async def run_async(self, coro: Coroutine[Any, Any, T]) -> T:
        """Await ``coro`` from any loop; it runs on the client loop."""
        if threading.current_thread() is self._thread:
            return await coro
        return await asyncio.wrap_future(self.submit(coro))

    # ── Operator ─────────────────────────────────────────────────

    def set_operator(self, account_id: AccountId | str, signer: Signer) -> Client:
        """Account that pays for transactions and the callable that signs for it."""
        self.operator_account_id = AccountId.parse(account_id)
        self.operator_signer = signer
        return self

    # ── Network settings ─────────────────────────────────────────

    def set_transport_security(self, enabled: bool) -> Client:
        self.run(self.network.set_transport_security(enabled))
        return self

    def set_verify_certificates(self, verify: bool) -> Client:
        self.network.set_verify_certificates(verify)
        return self

    def set_max_nodes_per_request(self, max_nodes: int | None) -> Client:
        self.network.set_max_nodes_per_request(max_nodes)
        return self

    def set_address_book(self, address_book: NodeAddressBook | list[NodeAddress]) -> Client:
        self.network.set_address_book(address_book)
        return self

    def set_network(self, network: Mapping[str, AccountId | str]) -> Client:
        self.run(self.network.set_network(network))
        return self

    def set_ledger_id(self, ledger_id: LedgerId | str | None) -> Client:
        if isinstance(ledger_id, str):
            ledger_id = LedgerId(ledger_id)
        self.network.set_ledger_id(ledger_id)
        return self

    # ── Health checks ────────────────────────────────────────────

    def ping(self, node_account_id: AccountId | str, timeout: float | None = None) -> None:
        """Round-trip to one node; raises if it cannot be reached."""
        PingQuery(node_account_id).execute(self, timeout)

    async def ping_async(self, node_account_id: AccountId | str, timeout: float | None = None) -> None:
        await PingQuery(node_account_id).execute_async(self, timeout)

    def ping_all(self, timeout: float | None = None) -> None:
        """Ping every node account concurrently; raises the first failure."""
        self.run(self._ping_all(timeout))

    async def _ping_all(self, timeout: float | None) -> None:
        accounts = sorted(set(self.network.get_network().values()))
        results = await asyncio.gather(
            *(PingQuery(a)._execute(self, timeout) for a in accounts), return_exceptions=True
        )
        # Every ping runs to completion before the first failure is raised.
        for result in results:
            if isinstance(result, BaseException):
                raise result

    # ── Shutdown ─────────────────────────────────────────────────

    def close(self) -> None:
        """Close every node channel and stop the client loop."""
        if self._closed:
            return
        try:
            self.run(self.network.close(self.config.close_timeout))
        finally:
            self._closed = True
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(self.config.close_timeout)
            if not self._loop.is_running():
                self._loop.close()
            logger.debug("Client closed")

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
