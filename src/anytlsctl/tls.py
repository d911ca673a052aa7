"""Self-signed TLS material for the anytls inbound."""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537
ORGANIZATION = "Self-Signed Testing"
COUNTRY = "XX"

KEY_MODE = 0o600
CERT_MODE = 0o644
NO_MATERIAL_REASON = "no certificate or key present"


class CertificateError(RuntimeError):
    """Raised when TLS material cannot be generated or written."""


@dataclass(frozen=True)
class TLSMaterial:
    """Certificate and private key locations."""

    certificate: Path
    key: Path


@dataclass(frozen=True)
class CertificateResult:
    """Outcome of :meth:`CertificateProvisioner.ensure`."""

    material: TLSMaterial
    created: bool
    reason: str
    common_name: str | None = None
    not_valid_before: datetime | None = None
    not_valid_after: datetime | None = None
    problem: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "certificate": str(self.material.certificate),
            "key": str(self.material.key),
            "created": self.created,
            "reason": self.reason,
            "common_name": self.common_name,
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
            "problem": self.problem,
        }


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


class CertificateProvisioner:
    """Create the certificate/key pair once and keep it across reruns.

    When both files exist they are left untouched. If they fail to parse or do
    not belong together the result carries a ``problem`` instead, and only
    ``replace_invalid=True`` regenerates them. A lone certificate or key is
    always replaced together with its missing partner.
    """

    def __init__(
        self,
        material: TLSMaterial,
        *,
        common_name: str,
        days: int,
        replace_invalid: bool = False,
    ) -> None:
        """Capture target paths and certificate parameters."""
        if days < 1:
            raise CertificateError(f"Certificate validity must be positive, got {days}.")
        self._material = material
        self._common_name = common_name
        self._days = days
        self._replace_invalid = replace_invalid

    @property
    def material(self) -> TLSMaterial:
        """Return the managed certificate/key paths."""
        return self._material

    def ensure(self, *, now: datetime | None = None) -> CertificateResult:
        """Return existing material or generate a fresh pair."""
        reason = self._reuse_blocker()
        both_present = self._material.certificate.is_file() and self._material.key.is_file()
        if reason is not None and both_present and not self._replace_invalid:
            return CertificateResult(
                material=self._material,
                created=False,
                reason="existing certificate and key kept",
                problem=reason,
            )
        if reason is None:
            cert = _load_certificate(self._material.certificate)
            return CertificateResult(
                material=self._material,
                created=False,
                reason="existing certificate and key match",
                common_name=_common_name(cert),
                not_valid_before=cert.not_valid_before_utc,
                not_valid_after=cert.not_valid_after_utc,
            )
        return self.generate(reason=reason, now=now)

    def generate(
        self,
        *,
        reason: str = "requested",
        now: datetime | None = None,
    ) -> CertificateResult:
        """Generate an RSA key and a SHA-256 self-signed certificate."""
        now = (now or datetime.now(UTC)).replace(microsecond=0)
        not_before = now
        not_after = now + timedelta(days=self._days)
        try:
            key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE)
            subject = issuer = x509.Name(
                [
                    x509.NameAttribute(NameOID.COMMON_NAME, self._common_name),
                    x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
                    x509.NameAttribute(NameOID.COUNTRY_NAME, COUNTRY),
                ]
            )
            cert = (
                x509.CertificateBuilder()
                .subject_name(subject)
                .issuer_name(issuer)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(not_before)
                .not_valid_after(not_after)
                .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
                .add_extension(
                    x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
                    critical=False,
                )
                .sign(key, hashes.SHA256())
            )
            key_bytes = key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
            cert_bytes = cert.public_bytes(serialization.Encoding.PEM)
        except ValueError as exc:
            raise CertificateError(f"Failed to generate certificate: {exc}") from exc

        try:
            _write_restricted(self._material.key, key_bytes, KEY_MODE)
            _write_restricted(self._material.certificate, cert_bytes, CERT_MODE)
        except OSError as exc:
            raise CertificateError(f"Failed to write TLS material: {exc}") from exc

        return CertificateResult(
            material=self._material,
            created=True,
            reason=reason,
            common_name=self._common_name,
            not_valid_before=cert.not_valid_before_utc,
            not_valid_after=cert.not_valid_after_utc,
        )

    def _reuse_blocker(self) -> str | None:
        """Return why existing material cannot be reused, or None if it can."""
        certificate = self._material.certificate
        key = self._material.key
        cert_exists = certificate.is_file()
        key_exists = key.is_file()
        if not cert_exists and not key_exists:
            return NO_MATERIAL_REASON
        if not cert_exists:
            return "certificate missing"
        if not key_exists:
            return "private key missing"
        try:
            cert = _load_certificate(certificate)
        except (OSError, ValueError) as exc:
            return f"certificate unreadable: {exc}"
        try:
            private_key = _load_private_key(key)
        except (OSError, ValueError, TypeError) as exc:
            return f"private key unreadable: {exc}"
        if not _public_keys_match(cert, private_key):
            return "certificate does not match private key"
        return None


def _write_restricted(path: Path, data: bytes, mode: int) -> None:
    """Write *data* to *path*, creating it with *mode* from the start."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    # O_CREAT honours the umask and leaves existing files' modes alone.
    path.chmod(mode)


def _common_name(cert: x509.Certificate) -> str | None:
    attributes = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attributes:
        return None
    value = attributes[0].value
    return value if isinstance(value, str) else value.decode("utf-8", "replace")


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    cert_key = cert.public_key()
    try:
        key_public = private_key.public_key()
    except AttributeError:  # pragma: no cover
        return False
    cert_bytes = cert_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = key_public.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


__all__ = [
    "CertificateError",
    "CertificateProvisioner",
    "CertificateResult",
    "NO_MATERIAL_REASON",
    "TLSMaterial",
]
