"""Self-signed certificate issuance for fixture virtual hosts."""
from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


class TLSIssueError(RuntimeError):
    """Raised when a certificate cannot be generated."""


@dataclass(frozen=True)
class TLSMaterial:
    """PEM encoded certificate and private key for a single hostname."""

    hostname: str
    certificate: bytes
    key: bytes

    @property
    def certificate_name(self) -> str:
        """Return the file name Prosody looks up for the certificate."""
        return f"{self.hostname}.crt"

    @property
    def key_name(self) -> str:
        """Return the file name Prosody looks up for the private key."""
        return f"{self.hostname}.key"


def issue_self_signed(
    hostname: str,
    *,
    key_size: int = 2048,
    valid_days: int = 30,
    now: datetime | None = None,
) -> TLSMaterial:
    """Generate a self-signed certificate valid for *hostname*."""
    hostname = hostname.strip()
    if not hostname:
        raise TLSIssueError("Certificate hostname must be a non-empty string.")
    if valid_days <= 0:
        raise TLSIssueError("Certificate validity must be at least one day.")

    now = now or datetime.now(UTC)
    try:
        key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    except ValueError as exc:
        raise TLSIssueError(f"Cannot generate {key_size}-bit key: {exc}") from exc

    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=valid_days))
        .add_extension(x509.SubjectAlternativeName([_general_name(hostname)]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage(
                [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
            ),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    return TLSMaterial(
        hostname=hostname,
        certificate=cert.public_bytes(serialization.Encoding.PEM),
        key=key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ),
    )


def _general_name(hostname: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(hostname))
    except ValueError:
        return x509.DNSName(hostname)


__all__ = ["TLSIssueError", "TLSMaterial", "issue_self_signed"]
