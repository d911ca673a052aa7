"""Client connection descriptor (``anytls://`` share link)."""
from __future__ import annotations

from dataclasses import dataclass

FRAGMENT = "anytls-server"


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Values encoded into the share link handed to the operator."""

    secret: str
    host: str
    port: int
    sni: str

    def to_uri(self) -> str:
        """Return the link in the format client import tools expect."""
        return (
            f"anytls://{self.secret}@{self.host}:{self.port}"
            f"?security=tls&sni={self.sni}&allowInsecure=1&type=tcp#{FRAGMENT}"
        )

    def __str__(self) -> str:
        """Return the URI form."""
        return self.to_uri()


__all__ = ["ConnectionDescriptor"]
