"""A single attempt target with its channel and health."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from ledger_client.errors import CertificateMismatchError, ChannelError
from ledger_client.ids import AccountId
from ledger_client.network.address_book import NodeAddress
from ledger_client.network.channel import Channel, ChannelFactory, certificate_hash, http_channel_factory
from ledger_client.network.endpoint import Endpoint

logger = logging.getLogger(__name__)

DEFAULT_MIN_BACKOFF = 8.0
DEFAULT_MAX_BACKOFF = 3600.0


class Node:
    """A connection-bearing wrapper around one node endpoint.

    Health is tracked as a backoff delay: every failed attempt quarantines
    the node for the current delay and doubles it; every success halves it.
    The delay doubles as the node's badness score for selection.
    """

    def __init__(
        self,
        account_id: AccountId,
        address: Endpoint | str,
        *,
        secure: bool = False,
        verify_certificates: bool = True,
        address_book_entry: NodeAddress | None = None,
        min_backoff: float = DEFAULT_MIN_BACKOFF,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
        channel_factory: ChannelFactory | None = None,
    ) -> None:
        self.account_id = account_id
        self.address = address if isinstance(address, Endpoint) else Endpoint.parse(address)
        self.secure = secure
        self.verify_certificates = verify_certificates
        self.address_book_entry = address_book_entry
        self.min_backoff = min_backoff
        self.max_backoff = max_backoff
        self.current_backoff = min_backoff
        self.bad_attempts = 0
        self.readmit_time = 0.0
        self._channel_factory = channel_factory or http_channel_factory
        self._channel: Channel | None = None
        self._lock = threading.Lock()
        self._in_flight = 0
        self._idle: asyncio.Event | None = None
        self.retired = False

    @property
    def key(self) -> AccountId:
        return self.account_id

    # ── Health ───────────────────────────────────────────────────

    def is_healthy(self, now: float | None = None) -> bool:
        return self.readmit_time <= (time.monotonic() if now is None else now)

    def remaining_backoff(self, now: float | None = None) -> float:
        """Seconds until the node leaves quarantine (0 if healthy)."""
        return max(0.0, self.readmit_time - (time.monotonic() if now is None else now))

    def increase_backoff(self) -> None:
        with self._lock:
            self.bad_attempts += 1
            self.readmit_time = time.monotonic() + self.current_backoff
            self.current_backoff = min(self.current_backoff * 2, self.max_backoff)
        logger.warning(
            "Node %s (%s) marked unhealthy; next backoff %.1fs",
            self.account_id, self.address, self.current_backoff,
        )

    def decrease_backoff(self) -> None:
        with self._lock:
            self.current_backoff = max(self.current_backoff / 2, self.min_backoff)

    def badness(self) -> tuple[float, int]:
        """Sort key for selection; lower is healthier."""
        return (self.current_backoff, self.bad_attempts)

    def copy_health_from(self, other: Node) -> None:
        self.current_backoff = other.current_backoff
        self.bad_attempts = other.bad_attempts
        self.readmit_time = other.readmit_time

    # ── Address book / certificates ──────────────────────────────

    def set_address_book_entry(self, entry: NodeAddress | None) -> Node:
        """Attach the entry used for certificate pinning; None accepts any certificate."""
        self.address_book_entry = entry
        return self

    def set_verify_certificates(self, verify: bool) -> Node:
        self.verify_certificates = verify
        return self

    def check_certificate(self, der: bytes) -> None:
        """Compare the peer certificate against the pinned hash.

        Raises:
            CertificateMismatchError: verification is on and the hash differs.
        """
        if not self.verify_certificates:
            return
        entry = self.address_book_entry
        if entry is None:
            return
        if not entry.cert_hash:
            logger.warning("No certificate hash known for node %s; skipping verification", self.account_id)
            return
        if certificate_hash(der) != entry.cert_hash:
            raise CertificateMismatchError(
                f"certificate hash mismatch for node {self.account_id}",
                endpoint=str(self.address),
            )

    # ── Channel ──────────────────────────────────────────────────

    def channel(self) -> Channel:
        """The node's channel, opened on first use.

        Raises:
            ChannelError: the network has replaced this node.
        """
        with self._lock:
            if self.retired:
                raise ChannelError(f"node {self.account_id} was replaced", endpoint=str(self.address))
            if self._channel is None:
                self._channel = self._channel_factory(
                    self.address,
                    self.secure,
                    self.check_certificate if self.secure else None,
                )
            return self._channel

    @property
    def is_open(self) -> bool:
        return self._channel is not None

    def retire(self) -> None:
        """Mark the node as no longer part of the network; it opens no new channel."""
        with self._lock:
            self.retired = True

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Channel]:
        """Hold the node's channel for the duration of one attempt."""
        with self._lock:
            self._in_flight += 1
            if self._idle is None:
                self._idle = asyncio.Event()
            self._idle.clear()
        try:
            yield self.channel()
        finally:
            with self._lock:
                self._in_flight -= 1
                if self._in_flight == 0 and self._idle is not None:
                    self._idle.set()

    async def close(self, timeout: float | None = None) -> None:
        """Close the channel once in-flight attempts finish.

        Waits at most ``timeout`` seconds in total; past that the close is
        abandoned. Safe to call repeatedly; the channel reopens on next use.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        idle = self._idle
        if idle is not None and self._in_flight:
            try:
                await asyncio.wait_for(idle.wait(), timeout)
            except asyncio.TimeoutError:
                logger.warning("Node %s still busy after %.1fs; closing anyway", self.account_id, timeout)
        with self._lock:
            channel, self._channel = self._channel, None
        if channel is None:
            return
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            await asyncio.wait_for(channel.close(), remaining)
        except asyncio.TimeoutError:
            logger.warning("Abandoned close of channel to node %s after %.1fs", self.account_id, timeout)

    # ── Transport mode ───────────────────────────────────────────

    def to_secure(self) -> Node:
        return self._with_transport(True, self.address.to_secure())

    def to_insecure(self) -> Node:
        return self._with_transport(False, self.address.to_insecure())

    def _with_transport(self, secure: bool, address: Endpoint) -> Node:
        node = Node(
            self.account_id,
            address,
            secure=secure,
            verify_certificates=self.verify_certificates,
            address_book_entry=self.address_book_entry,
            min_backoff=self.min_backoff,
            max_backoff=self.max_backoff,
            channel_factory=self._channel_factory,
        )
        node.copy_health_from(self)
        return node

    def __repr__(self) -> str:
        return f"Node({self.account_id}, {self.address}, secure={self.secure})"
