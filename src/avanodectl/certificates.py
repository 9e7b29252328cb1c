"""Inspection helpers for the node's staking certificate."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization


class CertificateError(RuntimeError):
    """Raised when staking material cannot be parsed."""


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


@dataclass(frozen=True, slots=True)
class CertificateInfo:
    """Summary of a staking certificate."""

    subject: str
    fingerprint_sha256: str
    not_valid_before: datetime
    not_valid_after: datetime
    key_matches: bool | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "subject": self.subject,
            "fingerprint_sha256": self.fingerprint_sha256,
            "not_valid_before": self.not_valid_before.isoformat(),
            "not_valid_after": self.not_valid_after.isoformat(),
            "key_matches": self.key_matches,
        }


def load_certificate(data: bytes) -> x509.Certificate:
    """Parse a PEM or DER encoded certificate."""
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        pass
    try:
        return x509.load_der_x509_certificate(data)
    except ValueError as exc:
        raise CertificateError(f"Unable to parse staking certificate: {exc}") from exc


def load_private_key(data: bytes) -> PrivateKeyProtocol:
    """Parse an unencrypted PEM private key."""
    try:
        private_key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as exc:
        raise CertificateError(f"Unable to parse staking key: {exc}") from exc
    return cast(PrivateKeyProtocol, private_key)


def inspect_certificate(certificate: bytes, private_key: bytes | None = None) -> CertificateInfo:
    """Describe *certificate* and, when given, whether *private_key* matches it."""
    cert = load_certificate(certificate)
    key_matches: bool | None = None
    if private_key is not None:
        key_matches = _public_keys_match(cert, load_private_key(private_key))
    return CertificateInfo(
        subject=cert.subject.rfc4514_string(),
        fingerprint_sha256=cert.fingerprint(hashes.SHA256()).hex(),
        not_valid_before=_as_utc(cert.not_valid_before_utc),
        not_valid_after=_as_utc(cert.not_valid_after_utc),
        key_matches=key_matches,
    )


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "CertificateError",
    "CertificateInfo",
    "inspect_certificate",
    "load_certificate",
    "load_private_key",
]
