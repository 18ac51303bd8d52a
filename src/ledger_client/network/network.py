"""Network — the set of known nodes and the policy for choosing among them.

Selection takes roughly one third of the network per request (the minimum
that tolerates a faulty third), healthiest first. Nodes in their backoff
window are skipped unless every node is backing off.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import threading
import time
from enum import Enum
from typing import Iterable, Mapping

from ledger_client.errors import NoHealthyNodesError, PreconditionError
from ledger_client.ids import AccountId, LedgerId
from ledger_client.network.address_book import (
    NodeAddress,
    NodeAddressBook,
    address_book_to_network,
    load_bundled_address_book,
    merge_address_books,
)
from ledger_client.network.channel import ChannelFactory
from ledger_client.network.endpoint import Endpoint
from ledger_client.network.node import DEFAULT_MAX_BACKOFF, DEFAULT_MIN_BACKOFF, Node

logger = logging.getLogger(__name__)

DEFAULT_CLOSE_TIMEOUT = 30.0


class UnhealthyPolicy(str, Enum):
    """What selection does when every node is in its backoff window."""

    IGNORE_QUARANTINE = "ignore_quarantine"
    FAIL_FAST = "fail_fast"


class Network:
    """Owns every known node and decides which ones a request may use.

    All reads and writes of the node collections happen under one lock so a
    selection never observes a half-applied update. Transport-mode changes
    are additionally serialized against each other.
    """

    def __init__(
        self,
        network: Mapping[str, AccountId | str] | None = None,
        *,
        ledger_id: LedgerId | None = None,
        address_book: Mapping[AccountId, NodeAddress] | None = None,
        transport_security: bool = False,
        verify_certificates: bool = True,
        max_nodes_per_request: int | None = None,
        unhealthy_policy: UnhealthyPolicy | str = UnhealthyPolicy.IGNORE_QUARANTINE,
        node_min_backoff: float = DEFAULT_MIN_BACKOFF,
        node_max_backoff: float = DEFAULT_MAX_BACKOFF,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT,
        channel_factory: ChannelFactory | None = None,
    ) -> None:
        self.ledger_id = ledger_id
        self.address_book: dict[AccountId, NodeAddress] | None = (
            dict(address_book) if address_book is not None else None
        )
        self.transport_security = transport_security
        self.verify_certificates = verify_certificates
        self.max_nodes_per_request = max_nodes_per_request
        self.unhealthy_policy = UnhealthyPolicy(unhealthy_policy)
        self.node_min_backoff = node_min_backoff
        self.node_max_backoff = node_max_backoff
        self.close_timeout = close_timeout
        self._channel_factory = channel_factory
        self._lock = threading.RLock()
        self._transition_lock = asyncio.Lock()
        self._nodes: list[Node] = []
        self._network: dict[AccountId, list[Node]] = {}
        if network:
            self._apply_network(network)

    @classmethod
    def for_network(cls, network: Mapping[str, AccountId | str], **kwargs) -> Network:
        """A custom network; no address book, so no certificate pinning."""
        return cls(network, **kwargs)

    @classmethod
    def for_ledger(cls, ledger_id: LedgerId | str, **kwargs) -> Network:
        """A known ledger built from its bundled address book."""
        ledger = ledger_id if isinstance(ledger_id, LedgerId) else LedgerId(ledger_id)
        book = load_bundled_address_book(ledger)
        if book is None:
            raise PreconditionError(f"no bundled address book for ledger {ledger}")
        return cls(address_book_to_network(book.values()), ledger_id=ledger, address_book=book, **kwargs)

    # ── Introspection ────────────────────────────────────────────

    @property
    def nodes(self) -> list[Node]:
        with self._lock:
            return list(self._nodes)

    def healthy_nodes(self) -> list[Node]:
        """Nodes outside their backoff window, healthiest first."""
        now = time.monotonic()
        with self._lock:
            return sorted((n for n in self._nodes if n.is_healthy(now)), key=Node.badness)

    def get_network(self) -> dict[str, AccountId]:
        with self._lock:
            return {str(node.address): node.account_id for node in self._nodes}

    def nodes_for_account(self, account_id: AccountId) -> list[Node]:
        with self._lock:
            return list(self._network.get(account_id, []))

    # ── Building the node set ────────────────────────────────────

    def _create_node(self, address: str, account_id: AccountId) -> Node:
        endpoint = Endpoint.parse(address)
        if self.transport_security:
            endpoint = endpoint.to_secure()
        entry = self.address_book.get(account_id) if self.address_book is not None else None
        return Node(
            account_id,
            endpoint,
            secure=self.transport_security,
            verify_certificates=self.verify_certificates,
            address_book_entry=entry,
            min_backoff=self.node_min_backoff,
            max_backoff=self.node_max_backoff,
            channel_factory=self._channel_factory,
        )

    def _apply_network(self, network: Mapping[str, AccountId | str]) -> list[Node]:
        """Reconcile nodes with ``network``; returns nodes that were dropped."""
        wanted = {
            str(self._mode_endpoint(Endpoint.parse(addr))): (addr, AccountId.parse(acct))
            for addr, acct in network.items()
        }
        with self._lock:
            kept: list[Node] = []
            dropped: list[Node] = []
            for node in self._nodes:
                target = wanted.pop(str(node.address), None)
                if target is not None and target[1] == node.account_id:
                    kept.append(node)
                else:
                    if target is not None:
                        wanted[str(node.address)] = target
                    dropped.append(node)
            for address, account_id in wanted.values():
                kept.append(self._create_node(address, account_id))
            self._nodes = kept
            self._rebuild_index()
            for node in dropped:
                node.retire()
        if dropped:
            logger.info("Dropped %d node(s) no longer in the network", len(dropped))
        return dropped

    def _mode_endpoint(self, endpoint: Endpoint) -> Endpoint:
        return endpoint.to_secure() if self.transport_security else endpoint

    def _rebuild_index(self) -> None:
        index: dict[AccountId, list[Node]] = {}
        for node in self._nodes:
            index.setdefault(node.account_id, []).append(node)
        self._network = index

    async def set_network(self, network: Mapping[str, AccountId | str]) -> None:
        """Replace the ``address -> account`` mapping, keeping surviving nodes."""
        dropped = self._apply_network(network)
        await asyncio.gather(*(node.close(self.close_timeout) for node in dropped))

    # ── Selection ────────────────────────────────────────────────

    def number_of_nodes_for_request(self) -> int:
        with self._lock:
            total = len(self._network)
        if self.max_nodes_per_request is not None:
            return min(self.max_nodes_per_request, total)
        return math.ceil(total / 3)

    def set_max_nodes_per_request(self, max_nodes: int | None) -> Network:
        if max_nodes is not None and max_nodes < 1:
            raise PreconditionError("max nodes per request must be at least 1")
        self.max_nodes_per_request = max_nodes
        return self

    def get_nodes_for_request(self, node_account_ids: Iterable[AccountId] | None = None) -> list[Node]:
        """Ordered candidate nodes for one request.

        With explicit account ids, exactly one node per id is returned, in
        the given order, regardless of health. Otherwise the healthiest
        ``number_of_nodes_for_request()`` accounts are chosen.

        Raises:
            PreconditionError: an explicit id is not part of the network.
            NoHealthyNodesError: every node is backing off under ``fail_fast``.
        """
        now = time.monotonic()
        with self._lock:
            if node_account_ids is not None:
                return [self._node_for_explicit(acct, now) for acct in node_account_ids]

            count = self.number_of_nodes_for_request()
            candidates = [n for n in self._nodes if n.is_healthy(now)]
            if not candidates and self._nodes:
                if self.unhealthy_policy is UnhealthyPolicy.FAIL_FAST:
                    raise NoHealthyNodesError("every node is in its backoff window")
                logger.debug("All nodes backing off; ignoring quarantine")
                candidates = list(self._nodes)

            # Shuffle first so equally healthy nodes share the load.
            random.shuffle(candidates)
            candidates.sort(key=Node.badness)

            selected: list[Node] = []
            seen: set[AccountId] = set()
            for node in candidates:
                if node.account_id in seen:
                    continue
                seen.add(node.account_id)
                selected.append(node)
                if len(selected) == count:
                    break
            return selected

    def _node_for_explicit(self, account_id: AccountId, now: float) -> Node:
        nodes = self._network.get(account_id)
        if not nodes:
            raise PreconditionError(f"node account id {account_id} is not in the client's network")
        healthy = [n for n in nodes if n.is_healthy(now)]
        return min(healthy or nodes, key=Node.badness)

    # ── Address book ─────────────────────────────────────────────

    def set_address_book(self, address_book: NodeAddressBook | Iterable[NodeAddress]) -> Network:
        """Replace the address book, keeping known certificate hashes."""
        entries = address_book.node_addresses if isinstance(address_book, NodeAddressBook) else address_book
        with self._lock:
            self.address_book = merge_address_books(self.address_book, entries)
            for node in self._nodes:
                node.set_address_book_entry(self.address_book.get(node.account_id))
        logger.info("Address book updated with %d entries", len(self.address_book))
        return self

    def set_ledger_id(self, ledger_id: LedgerId | None) -> Network:
        """Switch ledger; custom ledgers carry no address book."""
        book = load_bundled_address_book(ledger_id)
        with self._lock:
            self.ledger_id = ledger_id
            self.address_book = book
            for node in self._nodes:
                node.set_address_book_entry(book.get(node.account_id) if book is not None else None)
        return self

    # ── Transport security ───────────────────────────────────────

    def set_verify_certificates(self, verify: bool) -> Network:
        with self._lock:
            self.verify_certificates = verify
            for node in self._nodes:
                node.set_verify_certificates(verify)
        return self

    async def set_transport_security(self, enabled: bool) -> Network:
        """Rebuild every node in the requested transport mode.

        Identity and health carry over. Only one transition runs at a time.
        Replaced nodes are retired, so requests still running select their
        successors, and are closed within ``close_timeout`` once their
        in-flight attempts finish.
        """
        async with self._transition_lock:
            if self.transport_security == enabled:
                return self
            with self._lock:
                old_nodes = self._nodes
                self._nodes = [n.to_secure() if enabled else n.to_insecure() for n in old_nodes]
                self._rebuild_index()
                for node in old_nodes:
                    node.retire()
                self.transport_security = enabled
            logger.info("Transport security %s for %d node(s)", "enabled" if enabled else "disabled", len(old_nodes))
            await asyncio.gather(*(node.close(self.close_timeout) for node in old_nodes))
        return self

    # ── Shutdown ─────────────────────────────────────────────────

    async def close(self, timeout: float | None = None) -> None:
        timeout = self.close_timeout if timeout is None else timeout
        with self._lock:
            nodes = list(self._nodes)
        await asyncio.gather(*(node.close(timeout) for node in nodes))
