"""Public IPv4 discovery through external lookup services."""
from __future__ import annotations

import ipaddress
import re
from collections.abc import Sequence
from dataclasses import dataclass, field

import httpx

from .config import IPLookupConfig

PLACEHOLDER_IP = "your-server-ip"

_DOTTED_QUAD = re.compile(r"^[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}$")


@dataclass(frozen=True)
class LookupAttempt:
    """Outcome of querying a single lookup endpoint."""

    url: str
    address: str | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        """Return True when the endpoint produced a usable address."""
        return self.address is not None


@dataclass(frozen=True)
class PublicIPResult:
    """Resolved public address, or the placeholder when every lookup failed."""

    address: str
    source: str | None
    attempts: tuple[LookupAttempt, ...] = field(default_factory=tuple)

    @property
    def placeholder(self) -> bool:
        """Return True when the address must be corrected manually."""
        return self.source is None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "address": self.address,
            "source": self.source,
            "placeholder": self.placeholder,
            "attempts": [
                {"url": attempt.url, "address": attempt.address, "error": attempt.error}
                for attempt in self.attempts
            ],
        }


def parse_ipv4(text: str) -> str | None:
    """Return *text* as a dotted-quad IPv4 string, or None when it is not one."""
    candidate = text.strip()
    if not candidate or not _DOTTED_QUAD.match(candidate):
        return None
    try:
        return str(ipaddress.IPv4Address(candidate))
    except ipaddress.AddressValueError:
        return None


class PublicIPProber:
    """Ask the configured lookup services for this host's public IPv4."""

    def __init__(
        self,
        config: IPLookupConfig,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        """Capture endpoints and an optional pre-built HTTP client."""
        self._config = config
        self._client = client

    @property
    def endpoints(self) -> Sequence[str]:
        """Return the endpoints in the order they are tried."""
        return (self._config.primary, self._config.secondary)

    def probe(self) -> PublicIPResult:
        """Try the primary endpoint, then the secondary, then give up."""
        attempts: list[LookupAttempt] = []
        client = self._client or httpx.Client(
            timeout=self._config.timeout,
            follow_redirects=True,
            headers={"User-Agent": "curl/8.0"},
            # Bind to an IPv4 source so dual-stack hosts do not report IPv6.
            transport=httpx.HTTPTransport(local_address="0.0.0.0"),
        )
        try:
            for url in self.endpoints:
                attempt = self._query(client, url)
                attempts.append(attempt)
                if attempt.address is not None:
                    return PublicIPResult(
                        address=attempt.address,
                        source=url,
                        attempts=tuple(attempts),
                    )
        finally:
            if self._client is None:
                client.close()
        return PublicIPResult(address=PLACEHOLDER_IP, source=None, attempts=tuple(attempts))

    def _query(self, client: httpx.Client, url: str) -> LookupAttempt:
        try:
            response = client.get(url, timeout=self._config.timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            return LookupAttempt(url=url, address=None, error=str(exc) or type(exc).__name__)
        address = parse_ipv4(response.text)
        if address is None:
            body = response.text.strip()[:64]
            return LookupAttempt(url=url, address=None, error=f"malformed response: {body!r}")
        return LookupAttempt(url=url, address=address)


__all__ = [
    "LookupAttempt",
    "PLACEHOLDER_IP",
    "PublicIPProber",
    "PublicIPResult",
    "parse_ipv4",
]
