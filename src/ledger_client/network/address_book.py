"""Address book — the directory of node identities, endpoints and certificates.

Books are JSON documents of the form::

    {"node_address": [
        {"node_id": 0,
         "node_account_id": "0.0.3",
         "service_endpoint": [{"domain_name": "0.testnet.example", "port": 50211}],
         "node_cert_hash": "<hex sha-384 of the node's PEM certificate>",
         "rsa_pub_key": "...",
         "description": "...",
         "stake": 0}
    ]}

A legacy top-level ``ip_address``/``portno`` pair on an entry is turned
into its first endpoint.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from importlib import resources
from typing import Any, Iterable

from ledger_client.errors import AddressBookError, PreconditionError
from ledger_client.ids import AccountId, LedgerId
from ledger_client.network.endpoint import Endpoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeAddress:
    """One node's directory entry."""

    node_id: int
    account_id: AccountId | None
    addresses: tuple[Endpoint, ...]
    cert_hash: bytes = b""
    public_key: str | None = None
    description: str = ""
    stake: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeAddress:
        addresses: list[Endpoint] = []
        if data.get("ip_address"):
            addresses.append(Endpoint.from_dict({
                "ip_address": data["ip_address"],
                "port": data.get("portno", 0),
            }))
        for entry in data.get("service_endpoint", []):
            addresses.append(Endpoint.from_dict(entry))
        if not addresses:
            raise AddressBookError(f"node {data.get('node_id')} has no endpoints")

        account = data.get("node_account_id")
        return cls(
            node_id=int(data.get("node_id", 0)),
            account_id=AccountId.from_string(account) if account else None,
            addresses=tuple(addresses),
            cert_hash=_decode_cert_hash(data.get("node_cert_hash")),
            public_key=data.get("rsa_pub_key") or None,
            description=data.get("description", ""),
            stake=int(data.get("stake", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "node_id": self.node_id,
            "service_endpoint": [ep.to_dict() for ep in self.addresses],
            "node_cert_hash": self.cert_hash.hex(),
            "description": self.description,
            "stake": self.stake,
        }
        if self.account_id is not None:
            data["node_account_id"] = str(self.account_id)
        if self.public_key is not None:
            data["rsa_pub_key"] = self.public_key
        return data


def _decode_cert_hash(value: Any) -> bytes:
    if not value:
        return b""
    text = str(value).strip()
    if text.startswith("0x"):
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError as exc:
        raise AddressBookError(f"certificate hash is not hex: {value!r}") from exc


def parse_address_book(data: bytes | str) -> list[NodeAddress]:
    """Decode an address book document into its entries, in order."""
    try:
        raw = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise AddressBookError(f"address book is not valid JSON: {exc}") from exc

    entries = raw.get("node_address") if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        raise AddressBookError("address book has no node_address list")
    try:
        return [NodeAddress.from_dict(entry) for entry in entries]
    except AddressBookError:
        raise
    except (PreconditionError, TypeError, AttributeError, ValueError) as exc:
        raise AddressBookError(f"invalid address book entry: {exc}") from exc


def serialize_address_book(entries: Iterable[NodeAddress]) -> bytes:
    return json.dumps(
        {"node_address": [entry.to_dict() for entry in entries]},
        indent=2,
    ).encode()


def index_by_account(entries: Iterable[NodeAddress]) -> dict[AccountId, NodeAddress]:
    """Map account id to entry; entries without an account are dropped.

    The first entry for an account wins.
    """
    book: dict[AccountId, NodeAddress] = {}
    for entry in entries:
        if entry.account_id is None:
            continue
        book.setdefault(entry.account_id, entry)
    return book


def merge_address_books(
    previous: dict[AccountId, NodeAddress] | None,
    entries: Iterable[NodeAddress],
) -> dict[AccountId, NodeAddress]:
    """Index a refreshed book, carrying certificate hashes forward.

    An entry that arrives without a certificate hash inherits the hash of
    the previous entry for the same account, so a known hash never
    regresses to empty.
    """
    merged = index_by_account(entries)
    if not previous:
        return merged
    for account_id, entry in merged.items():
        old = previous.get(account_id)
        if old is not None and not entry.cert_hash and old.cert_hash:
            merged[account_id] = replace(entry, cert_hash=old.cert_hash)
    return merged


def address_book_to_network(book: Iterable[NodeAddress]) -> dict[str, AccountId]:
    """Flatten entries into the ``address -> account`` mapping nodes are built from."""
    network: dict[str, AccountId] = {}
    for entry in book:
        if entry.account_id is None:
            continue
        for endpoint in entry.addresses:
            network[str(endpoint)] = entry.account_id
    return network


def load_bundled_address_book(ledger_id: LedgerId | None) -> dict[AccountId, NodeAddress] | None:
    """Address book shipped with the package, or None for custom ledgers."""
    if ledger_id is None or not ledger_id.is_known_network:
        return None
    path = resources.files("ledger_client") / "addressbook" / f"{ledger_id.name}.json"
    entries = parse_address_book(path.read_bytes())
    logger.debug("Loaded %d bundled address book entries for %s", len(entries), ledger_id)
    return index_by_account(entries)


@dataclass
class NodeAddressBook:
    """An ordered collection of entries, as received from a source."""

    node_addresses: list[NodeAddress] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data: bytes | str) -> NodeAddressBook:
        return cls(parse_address_book(data))

    def to_bytes(self) -> bytes:
        return serialize_address_book(self.node_addresses)
