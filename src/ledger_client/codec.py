"""JSON envelopes exchanged with nodes.

Request bodies stay opaque: they travel base64-encoded inside a small JSON
envelope that also names the transaction and the node it is addressed to.
"""

from __future__ import annotations

import base64
import json
from typing import Any

from ledger_client.errors import ChannelError
from ledger_client.status import Status


def encode(envelope: dict[str, Any]) -> bytes:
    """Canonical bytes of an envelope (sorted keys, no whitespace)."""
    return json.dumps(envelope, sort_keys=True, separators=(",", ":")).encode()


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def unb64(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def decode_response(raw: bytes, endpoint: str | None = None) -> dict[str, Any]:
    """Decode a node response; it must be a JSON object with a ``status``.

    Raises:
        ChannelError: the bytes are not a usable response (retryable; the
            node is treated as faulty).
    """
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ChannelError(f"malformed response: {exc}", endpoint=endpoint) from exc
    if not isinstance(data, dict) or "status" not in data:
        raise ChannelError("response has no status", endpoint=endpoint)
    return data


def parse_status(value: Any, endpoint: str | None = None) -> Status:
    """Map a status name to ``Status``; unrecognised names are terminal."""
    try:
        return Status(value)
    except ValueError as exc:
        raise ChannelError(f"unrecognised status {value!r}", endpoint=endpoint, retryable=False) from exc
