"""Render and write the sing-box configuration for the anytls inbound."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

CONFIG_MODE = 0o600


@dataclass(frozen=True)
class InboundSettings:
    """Values embedded into the anytls inbound."""

    listen_port: int
    certificate_path: str
    key_path: str
    password: str
    user_name: str = "user1"
    log_level: str = "info"


def render_config(settings: InboundSettings) -> dict[str, object]:
    """Return the sing-box document for *settings*.

    The document has a fixed shape: a logging block writing to stderr, one
    ``anytls`` inbound listening on every address with a single user and TLS
    enabled, and one ``direct`` outbound. The same settings always render to
    the same document.
    """
    return {
        "log": {
            "disabled": False,
            "level": settings.log_level,
            "output": "stderr",
        },
        "inbounds": [
            {
                "type": "anytls",
                "listen": "::",
                "listen_port": settings.listen_port,
                "users": [
                    {
                        "name": settings.user_name,
                        "password": settings.password,
                    }
                ],
                "tls": {
                    "enabled": True,
                    "certificate_path": settings.certificate_path,
                    "key_path": settings.key_path,
                },
            }
        ],
        "outbounds": [
            {
                "type": "direct",
            }
        ],
    }


def write_config(path: Path, document: dict[str, object]) -> Path:
    """Overwrite *path* with *document* and restrict it to the owner.

    sing-box validates the document when the container starts; nothing here
    checks it beyond JSON serialisation.
    """
    payload = json.dumps(document, indent=2) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, CONFIG_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(payload)
    path.chmod(CONFIG_MODE)
    return path


__all__ = ["CONFIG_MODE", "InboundSettings", "render_config", "write_config"]
