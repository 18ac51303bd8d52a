"""Per-node transport channel.

A channel delivers one opaque payload to a node method and returns the raw
response bytes. ``HttpChannel`` does this over HTTP POST with aiohttp; tests
and alternative transports plug in through the ``ChannelFactory`` seam.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import ssl
from typing import Callable, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout, TCPConnector

from ledger_client.errors import CertificateMismatchError, ChannelError
from ledger_client.network.endpoint import Endpoint

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = ClientTimeout(total=10)

# HTTP statuses meaning the node is unavailable or overloaded.
RETRYABLE_HTTP_STATUSES = frozenset({429, 502, 503, 504})


class Channel(Protocol):
    async def invoke(self, method: str, payload: bytes, timeout: float | None = None) -> bytes: ...

    async def close(self) -> None: ...


CertificateCheck = Callable[[bytes], None]
ChannelFactory = Callable[[Endpoint, bool, "CertificateCheck | None"], Channel]


def certificate_hash(der: bytes) -> bytes:
    """SHA-384 of the PEM encoding of a DER certificate."""
    return hashlib.sha384(ssl.DER_cert_to_PEM_cert(der).encode()).digest()


def _pinning_context() -> ssl.SSLContext:
    # Node certificates are self-signed; trust comes from the pinned hash.
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


class HttpChannel:
    """HTTP-based channel to a single node endpoint.

    The client session is created on first use, on the running loop.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        secure: bool = False,
        certificate_check: CertificateCheck | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.secure = secure
        self._certificate_check = certificate_check
        self._session: ClientSession | None = None

    @property
    def base_url(self) -> str:
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.endpoint.url_host}:{self.endpoint.port}"

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            connector = TCPConnector(ssl=_pinning_context()) if self.secure else TCPConnector()
            self._session = ClientSession(connector=connector, timeout=DEFAULT_TIMEOUT)
        return self._session

    async def invoke(self, method: str, payload: bytes, timeout: float | None = None) -> bytes:
        """POST ``payload`` to ``method`` and return the response body.

        Raises:
            ChannelError: the node was unreachable, timed out, or answered
                with a non-success HTTP status.
        """
        url = f"{self.base_url}/{method.lstrip('/')}"
        request_timeout = ClientTimeout(total=timeout) if timeout is not None else None
        try:
            async with self._get_session().post(
                url,
                data=payload,
                headers={"Content-Type": "application/octet-stream"},
                timeout=request_timeout,
            ) as resp:
                if self.secure:
                    self._check_peer_certificate(resp)
                body = await resp.read()
                if resp.status in RETRYABLE_HTTP_STATUSES:
                    raise ChannelError(f"node unavailable (HTTP {resp.status})", endpoint=str(self.endpoint))
                if resp.status != 200:
                    raise ChannelError(
                        f"node rejected request (HTTP {resp.status})",
                        endpoint=str(self.endpoint),
                        retryable=False,
                    )
                return body
        except asyncio.TimeoutError as exc:
            raise ChannelError("request timed out", endpoint=str(self.endpoint)) from exc
        except (ClientError, OSError) as exc:
            raise ChannelError(f"transport failure: {exc}", endpoint=str(self.endpoint)) from exc

    def _check_peer_certificate(self, resp) -> None:
        if self._certificate_check is None:
            return
        conn = resp.connection
        transport = conn.transport if conn is not None else None
        ssl_object = transport.get_extra_info("ssl_object") if transport is not None else None
        der = ssl_object.getpeercert(binary_form=True) if ssl_object is not None else None
        if not der:
            raise CertificateMismatchError("peer certificate unavailable", endpoint=str(self.endpoint))
        self._certificate_check(der)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
        logger.debug("Channel to %s closed", self.endpoint)


def http_channel_factory(
    endpoint: Endpoint,
    secure: bool,
    certificate_check: CertificateCheck | None = None,
) -> Channel:
    return HttpChannel(endpoint, secure, certificate_check)
