"""Client configuration: retry budgets, backoff, timeouts, and network choice.

Values come from keyword arguments, a JSON file or dict, and finally
``LEDGER_CLIENT_*`` environment variables, which win:

    LEDGER_CLIENT_NETWORK:          ledger name (mainnet, testnet, previewnet)
    LEDGER_CLIENT_MAX_ATTEMPTS:     attempts per request
    LEDGER_CLIENT_REQUEST_TIMEOUT:  seconds for a whole request
    LEDGER_CLIENT_TRANSPORT_SECURITY: "1"/"true" to use TLS ports
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

from ledger_client.errors import PreconditionError
from ledger_client.network.network import UnhealthyPolicy

ENV_PREFIX = "LEDGER_CLIENT_"

_TRUE = {"1", "true", "yes", "on"}


@dataclass
class ClientConfig:
    """Knobs consumed by the network and the request executor."""

    network: str | dict[str, str] = "testnet"
    operator_account_id: str | None = None
    max_attempts: int = 10
    min_backoff: float = 0.25
    max_backoff: float = 8.0
    node_min_backoff: float = 8.0
    node_max_backoff: float = 3600.0
    request_timeout: float = 120.0
    attempt_timeout: float = 10.0
    close_timeout: float = 30.0
    max_nodes_per_request: int | None = None
    transport_security: bool = False
    verify_certificates: bool = True
    all_unhealthy_policy: str = UnhealthyPolicy.IGNORE_QUARANTINE.value
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise PreconditionError("max_attempts must be at least 1")
        if self.min_backoff < 0 or self.max_backoff < self.min_backoff:
            raise PreconditionError("backoff bounds must satisfy 0 <= min_backoff <= max_backoff")
        if self.node_min_backoff < 0 or self.node_max_backoff < self.node_min_backoff:
            raise PreconditionError("node backoff bounds must satisfy 0 <= min <= max")
        for name in ("request_timeout", "attempt_timeout", "close_timeout"):
            if getattr(self, name) <= 0:
                raise PreconditionError(f"{name} must be positive")
        if self.max_nodes_per_request is not None and self.max_nodes_per_request < 1:
            raise PreconditionError("max_nodes_per_request must be at least 1")
        try:
            UnhealthyPolicy(self.all_unhealthy_policy)
        except ValueError as exc:
            raise PreconditionError(f"unknown all_unhealthy_policy: {self.all_unhealthy_policy!r}") from exc

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> ClientConfig:
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs = {k: v for k, v in raw.items() if k in known}
        kwargs["extra"] = {k: v for k, v in raw.items() if k not in known}
        return cls(**kwargs)

    @classmethod
    def load(
        cls,
        source: str | Path | Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> ClientConfig:
        """Config from a file path or dict, with environment overrides applied."""
        if source is None:
            raw: dict[str, Any] = {}
        elif isinstance(source, Mapping):
            raw = dict(source)
        else:
            path = Path(source).resolve()
            if not path.exists():
                raise PreconditionError(f"config file not found: {path}")
            with open(path) as f:
                raw = json.load(f)
        raw.update(env_overrides(os.environ if environ is None else environ))
        return cls.from_dict(raw)


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Typed overrides for every config field set as ``LEDGER_CLIENT_<FIELD>``."""
    overrides: dict[str, Any] = {}
    for f in fields(ClientConfig):
        value = environ.get(ENV_PREFIX + f.name.upper())
        if value is None or f.name == "extra":
            continue
        default = getattr(ClientConfig, f.name, None)
        try:
            if f.name == "network" and value.strip().startswith("{"):
                overrides[f.name] = json.loads(value)
            elif isinstance(default, bool):
                overrides[f.name] = value.strip().lower() in _TRUE
            elif isinstance(default, int) or f.name == "max_nodes_per_request":
                overrides[f.name] = int(value)
            elif isinstance(default, float):
                overrides[f.name] = float(value)
            else:
                overrides[f.name] = value
        except ValueError as exc:
            raise PreconditionError(f"invalid value for {ENV_PREFIX}{f.name.upper()}: {value!r}") from exc
    return overrides
