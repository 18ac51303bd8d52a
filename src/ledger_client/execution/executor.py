"""Request executor — drives one query or transaction to a terminal outcome.

Every request kind supplies the same small capability set (build the
payload for a node, classify a status, map a success) and the executor
owns everything else: node choice, rotation, health updates, backoff,
identity regeneration and the overall deadline.

    SELECT_NODE -> ATTEMPT -> SUCCESS
                           -> retryable error -> BACKOFF -> SELECT_NODE
                           -> terminal error / attempts exhausted -> FAILED
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Future
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, Iterable, Protocol, TypeVar

from ledger_client import codec
from ledger_client.errors import (
    ChannelError,
    MaxAttemptsExceededError,
    PrecheckStatusError,
    PreconditionError,
    RequestTimeoutError,
)
from ledger_client.ids import AccountId, TransactionId
from ledger_client.network.network import Network
from ledger_client.network.node import Node
from ledger_client.status import NODE_SERVER_ERRORS, TRANSIENT_PRECHECK, Status

if TYPE_CHECKING:
    from ledger_client.client import Client
    from ledger_client.config import ClientConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)

Sleep = Callable[[float], Awaitable[Any]]


async def with_deadline(coro: Awaitable[T], timeout: float, what: str) -> T:
    """Await ``coro``, raising RequestTimeoutError once ``timeout`` elapses."""
    try:
        return await asyncio.wait_for(coro, timeout)
    except asyncio.TimeoutError as exc:
        if isinstance(exc, RequestTimeoutError):
            raise
        raise RequestTimeoutError(f"{what} did not complete within {timeout:.1f}s") from exc


class ExecutionState(str, Enum):
    """How the executor proceeds after a node answered."""

    SUCCESS = "success"
    RETRY = "retry"                  # same request after the request backoff
    SERVER_ERROR = "server_error"    # penalise the node, move to the next one
    REGENERATE = "regenerate"        # fresh transaction identity, then retry
    REQUEST_ERROR = "request_error"  # terminal


def classify_precheck(status: Status) -> ExecutionState:
    """Default classification of a precheck status."""
    if status is Status.OK:
        return ExecutionState.SUCCESS
    if status in NODE_SERVER_ERRORS:
        return ExecutionState.SERVER_ERROR
    if status in TRANSIENT_PRECHECK:
        return ExecutionState.RETRY
    return ExecutionState.REQUEST_ERROR


class RequestStrategy(Protocol[T_co]):
    """What the executor needs from a request kind."""

    method: str
    node_account_ids: list[AccountId] | None
    transaction_id: TransactionId | None
    max_attempts: int | None
    min_backoff: float | None
    max_backoff: float | None
    attempt_timeout: float | None

    def build_request(self, node: Node) -> bytes: ...

    def classify(self, status: Status, response: dict[str, Any]) -> ExecutionState: ...

    def map_response(self, node: Node, response: dict[str, Any]) -> T_co: ...

    def regenerate_transaction_id(self) -> bool: ...


class Executor:
    """Runs request strategies against a network."""

    def __init__(self, network: Network, config: ClientConfig, sleep: Sleep | None = None) -> None:
        self.network = network
        self.config = config
        self._sleep = sleep or asyncio.sleep

    async def execute(self, request: RequestStrategy[T], timeout: float | None = None) -> T:
        """Execute ``request`` within ``timeout`` seconds for all attempts.

        Raises:
            RequestTimeoutError: the deadline elapsed.
            PrecheckStatusError: a node rejected the request with a
                non-retryable status.
            MaxAttemptsExceededError: every allowed attempt failed.
            ChannelError: a node answered in a way that cannot be retried.
        """
        timeout = self.config.request_timeout if timeout is None else timeout
        return await with_deadline(self._run(request), timeout, request.method)

    def _candidates(self, request: RequestStrategy[Any]) -> list[Node]:
        nodes = self.network.get_nodes_for_request(request.node_account_ids)
        if not nodes:
            raise PreconditionError("the network has no nodes to send the request to")
        return nodes

    async def _next_node(self, nodes: list[Node], start: int) -> tuple[Node, int]:
        """Next healthy candidate in rotation order, waiting out backoff if none is."""
        for offset in range(len(nodes)):
            index = (start + offset) % len(nodes)
            if nodes[index].is_healthy():
                return nodes[index], index + 1
        node = min(nodes, key=lambda n: n.remaining_backoff())
        delay = node.remaining_backoff()
        logger.debug("All candidates backing off; waiting %.2fs for node %s", delay, node.account_id)
        await self._sleep(delay)
        return node, nodes.index(node) + 1

    async def _run(self, request: RequestStrategy[T]) -> T:
        max_attempts = request.max_attempts or self.config.max_attempts
        min_backoff = self.config.min_backoff if request.min_backoff is None else request.min_backoff
        max_backoff = self.config.max_backoff if request.max_backoff is None else request.max_backoff
        attempt_timeout = request.attempt_timeout or self.config.attempt_timeout

        nodes = self._candidates(request)
        last_error: BaseException | None = None
        position = 0
        retries = 0

        for attempt in range(1, max_attempts + 1):
            node, position = await self._next_node(nodes, position)
            while node.retired:
                # The network replaced its nodes while this request waited.
                logger.debug("Node %s was replaced; selecting again", node.account_id)
                nodes = self._candidates(request)
                node, position = await self._next_node(nodes, 0)
            payload = request.build_request(node)
            logger.debug(
                "Attempt %d/%d: %s via node %s (%s)",
                attempt, max_attempts, request.method, node.account_id, node.address,
            )

            try:
                async with node.acquire() as channel:
                    raw = await channel.invoke(request.method, payload, attempt_timeout)
                response = codec.decode_response(raw, str(node.address))
                status = codec.parse_status(response["status"], str(node.address))
            except ChannelError as exc:
                if not exc.retryable:
                    raise
                logger.debug("Node %s unreachable: %s", node.account_id, exc)
                node.increase_backoff()
                last_error = exc
                continue

            node.decrease_backoff()
            state = request.classify(status, response)
            if state is ExecutionState.SUCCESS:
                return request.map_response(node, response)

            error = PrecheckStatusError(status, request.transaction_id, node.account_id)
            if state is ExecutionState.REQUEST_ERROR:
                raise error
            last_error = error

            if state is ExecutionState.SERVER_ERROR:
                logger.debug("Node %s returned %s; trying another node", node.account_id, status.value)
                node.increase_backoff()
            elif state is ExecutionState.REGENERATE:
                if not request.regenerate_transaction_id():
                    raise error
                logger.debug("Transaction identity stale (%s); regenerated as %s", status.value, request.transaction_id)
                nodes = self._candidates(request)
                position = 0
            else:
                retries += 1
                delay = min(min_backoff * 2 ** (retries - 1), max_backoff)
                logger.debug("Node %s returned %s; retrying in %.2fs", node.account_id, status.value, delay)
                await self._sleep(delay)

        raise MaxAttemptsExceededError(max_attempts, last_error)


class Executable(Generic[T]):
    """Shared options and the sync/async execution façade for request kinds.

    Subclasses provide ``method``, ``build_request`` and ``map_response``;
    ``classify`` defaults to the precheck allow-list.
    """

    method: str = ""
    transaction_id: TransactionId | None = None

    def __init__(
        self,
        *,
        node_account_ids: Iterable[AccountId | str] | None = None,
        max_attempts: int | None = None,
        min_backoff: float | None = None,
        max_backoff: float | None = None,
        attempt_timeout: float | None = None,
    ) -> None:
        self.node_account_ids: list[AccountId] | None = None
        if node_account_ids is not None:
            self.set_node_account_ids(node_account_ids)
        if max_attempts is not None and max_attempts < 1:
            raise PreconditionError("max_attempts must be at least 1")
        if min_backoff is not None and max_backoff is not None and max_backoff < min_backoff:
            raise PreconditionError("max_backoff must not be below min_backoff")
        self.max_attempts = max_attempts
        self.min_backoff = min_backoff
        self.max_backoff = max_backoff
        self.attempt_timeout = attempt_timeout

    def set_node_account_ids(self, node_account_ids: Iterable[AccountId | str]) -> Executable[T]:
        ids = [AccountId.parse(a) for a in node_account_ids]
        if not ids:
            raise PreconditionError("node account ids must not be empty")
        self.node_account_ids = ids
        return self

    def classify(self, status: Status, response: dict[str, Any]) -> ExecutionState:
        return classify_precheck(status)

    def regenerate_transaction_id(self) -> bool:
        return False

    def build_request(self, node: Node) -> bytes:
        raise NotImplementedError

    def map_response(self, node: Node, response: dict[str, Any]) -> T:
        raise NotImplementedError

    def _prepare(self, client: Client) -> None:
        """Fill in anything derived from the client before the first attempt."""

    async def _execute(self, client: Client, timeout: float | None = None) -> T:
        self._prepare(client)
        return await client.executor.execute(self, timeout)

    def execute(self, client: Client, timeout: float | None = None) -> T:
        """Execute and block until a terminal outcome."""
        return client.run(self._execute(client, timeout))

    async def execute_async(self, client: Client, timeout: float | None = None) -> T:
        """Execute from any event loop; the work runs on the client's loop."""
        return await client.run_async(self._execute(client, timeout))

    def execute_future(self, client: Client, timeout: float | None = None) -> Future[T]:
        """Start executing and return a future for chaining."""
        return client.submit(self._execute(client, timeout))
