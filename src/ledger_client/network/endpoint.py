"""Network endpoints: one address plus the port a node listens on."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Any

from ledger_client.errors import PreconditionError

PLAINTEXT_PORT = 50211
TLS_PORT = 50212
MIRROR_PLAINTEXT_PORT = 5600
MIRROR_TLS_PORT = 443

_TO_SECURE = {PLAINTEXT_PORT: TLS_PORT, MIRROR_PLAINTEXT_PORT: MIRROR_TLS_PORT}
_TO_INSECURE = {v: k for k, v in _TO_SECURE.items()}


@dataclass(frozen=True)
class Endpoint:
    """An IP address (4 or 16 raw bytes) or a domain name, plus a port.

    Exactly one of ``address`` and ``domain_name`` is set.
    """

    address: bytes | None = None
    domain_name: str | None = None
    port: int = PLAINTEXT_PORT

    def __post_init__(self) -> None:
        if (self.address is None) == (self.domain_name is None):
            raise PreconditionError("endpoint needs exactly one of address or domain name")
        if self.address is not None and len(self.address) not in (4, 16):
            raise PreconditionError(f"address must be 4 or 16 bytes, got {len(self.address)}")
        if self.domain_name is not None and not self.domain_name.strip():
            raise PreconditionError("domain name must not be empty")
        if not 0 <= self.port <= 0xFFFF:
            raise PreconditionError(f"port out of range: {self.port}")

    @classmethod
    def parse(cls, text: str) -> Endpoint:
        """Parse ``host:port``, ``[v6]:port`` or a bare host (plaintext port)."""
        text = text.strip()
        host, port = text, PLAINTEXT_PORT
        if text.startswith("["):
            host, sep, rest = text[1:].partition("]")
            if not sep:
                raise PreconditionError(f"malformed endpoint: {text!r}")
            if rest:
                if not rest.startswith(":"):
                    raise PreconditionError(f"malformed endpoint: {text!r}")
                port = _parse_port(rest[1:], text)
        elif text.count(":") == 1:
            host, port_text = text.rsplit(":", 1)
            port = _parse_port(port_text, text)
        return cls.for_host(host, port)

    @classmethod
    def for_host(cls, host: str, port: int = PLAINTEXT_PORT) -> Endpoint:
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            return cls(domain_name=host, port=port)
        return cls(address=ip.packed, port=port)

    @property
    def host(self) -> str:
        if self.domain_name is not None:
            return self.domain_name
        return str(ipaddress.ip_address(self.address))

    @property
    def url_host(self) -> str:
        """Host as it must appear in a URL (IPv6 bracketed)."""
        if self.address is not None and len(self.address) == 16:
            return f"[{self.host}]"
        return self.host

    def to_secure(self) -> Endpoint:
        return Endpoint(self.address, self.domain_name, _TO_SECURE.get(self.port, self.port))

    def to_insecure(self) -> Endpoint:
        return Endpoint(self.address, self.domain_name, _TO_INSECURE.get(self.port, self.port))

    # ── Serialization ────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"port": self.port}
        if self.domain_name is not None:
            data["domain_name"] = self.domain_name
        else:
            data["ip_address"] = self.host
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Endpoint:
        port = int(data.get("port", PLAINTEXT_PORT))
        if data.get("domain_name"):
            return cls(domain_name=data["domain_name"], port=port)
        ip_text = data.get("ip_address") or data.get("ip_address_v4")
        if not ip_text:
            raise PreconditionError(f"endpoint entry has no address: {data!r}")
        try:
            return cls(address=ipaddress.ip_address(ip_text).packed, port=port)
        except ValueError as exc:
            raise PreconditionError(f"invalid ip address: {ip_text!r}") from exc

    def __str__(self) -> str:
        return f"{self.url_host}:{self.port}"


def _parse_port(port_text: str, original: str) -> int:
    try:
        return int(port_text)
    except ValueError as exc:
        raise PreconditionError(f"malformed endpoint: {original!r}") from exc
