"""Persistent per-deployment secret used as the anytls user password."""
from __future__ import annotations

import re
import secrets
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)


class SecretError(RuntimeError):
    """Raised when the secret cannot be generated, read or persisted."""


@dataclass(frozen=True)
class SecretResult:
    """Secret value and whether it was created during this run."""

    value: str
    path: Path
    created: bool


def format_uuid(raw: bytes) -> str:
    """Format 16 bytes as a lowercase 8-4-4-4-12 string."""
    if len(raw) != 16:
        raise SecretError(f"Expected 16 random bytes, got {len(raw)}.")
    text = raw.hex()
    return f"{text[0:8]}-{text[8:12]}-{text[12:16]}-{text[16:20]}-{text[20:32]}"


def _uuid_from_random_bytes() -> str:
    return format_uuid(secrets.token_bytes(16))


@dataclass(slots=True)
class SecretStore:
    """Load the secret from disk, or create and persist a new one.

    An existing file is reused verbatim apart from trailing newlines; its
    format is not validated. New values come from ``uuidgen`` when installed,
    otherwise from :mod:`secrets`.
    """

    path: Path
    uuidgen_bin: str = "uuidgen"
    random_source: Callable[[], str] = _uuid_from_random_bytes

    def exists(self) -> bool:
        """Return True when a secret has already been persisted."""
        return self.path.is_file()

    def load(self) -> str:
        """Return the persisted secret."""
        try:
            value = self.path.read_text(encoding="utf-8").rstrip("\n")
        except OSError as exc:
            raise SecretError(f"Unable to read secret file {self.path}: {exc}") from exc
        if not value.strip():
            raise SecretError(f"Secret file {self.path} is empty.")
        return value

    def provision(self) -> SecretResult:
        """Return the existing secret or create one."""
        if self.exists():
            return SecretResult(value=self.load(), path=self.path, created=False)
        value = self.generate()
        try:
            self.path.write_text(f"{value}\n", encoding="utf-8")
        except OSError as exc:
            raise SecretError(f"Unable to write secret file {self.path}: {exc}") from exc
        return SecretResult(value=value, path=self.path, created=True)

    def generate(self) -> str:
        """Return a fresh UUID-shaped secret."""
        if shutil.which(self.uuidgen_bin):
            try:
                result = subprocess.run(  # noqa: S603
                    [self.uuidgen_bin],
                    capture_output=True,
                    text=True,
                    check=True,
                )
            except (OSError, subprocess.CalledProcessError) as exc:
                raise SecretError(f"{self.uuidgen_bin} failed: {exc}") from exc
            value = result.stdout.strip().lower()
            if UUID_PATTERN.match(value):
                return value
            raise SecretError(f"{self.uuidgen_bin} returned an unexpected value: {value!r}")
        return self.random_source()


__all__ = ["SecretError", "SecretResult", "SecretStore", "UUID_PATTERN", "format_uuid"]
