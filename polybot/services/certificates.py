"""
Self-signed certificate issuance for the webhook listener.

Telegram accepts a self-signed certificate uploaded with ``setWebhook`` as long
as its common name matches the address the webhook URL points at, so every
public-IP change needs a fresh certificate.
"""

from __future__ import annotations

import asyncio
import datetime
import ipaddress
import os
import tempfile
from pathlib import Path

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from polybot.errors import CertificateError

logger = structlog.get_logger(__name__)

RSA_KEY_SIZE = 2048


def issue_certificate(ip: str, *, organization: str = "Polybot", days: int = 365) -> tuple[bytes, bytes]:
    """
    Generate an RSA key pair and a self-signed X.509 v3 certificate for *ip*.

    Returns ``(certificate_pem, private_key_pem)``; the key is PKCS#8.
    """
    try:
        address = ipaddress.ip_address(ip)
    except ValueError as e:
        raise CertificateError(f"not an IP address: {ip!r}") from e

    key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "DE"),
            x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, "B"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
            x509.NameAttribute(NameOID.COMMON_NAME, str(address)),
        ]
    )
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.IPAddress(address)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def _atomic_write(path: Path, data: bytes, mode: int) -> None:
    """Write via tempfile + rename so a reader never sees a half-written file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=".polybot_")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class CertificateIssuer:
    """Issues certificates for an IP and stores them at the configured paths."""

    def __init__(
        self,
        pubkey_path: Path,
        privkey_path: Path,
        *,
        organization: str = "Polybot",
        days: int = 365,
    ) -> None:
        self.pubkey_path = pubkey_path
        self.privkey_path = privkey_path
        self._organization = organization
        self._days = days

    def write(self, ip: str) -> bytes:
        """Issue and persist a certificate for *ip*; returns the certificate PEM."""
        cert_pem, key_pem = issue_certificate(ip, organization=self._organization, days=self._days)
        try:
            _atomic_write(self.privkey_path, key_pem, 0o600)
            _atomic_write(self.pubkey_path, cert_pem, 0o644)
        except OSError as e:
            raise CertificateError(f"cannot write certificate files: {e}") from e
        logger.info("certificates.issued", ip=ip, path=str(self.pubkey_path))
        return cert_pem

    async def issue(self, ip: str) -> bytes:
        """Async wrapper — RSA key generation is CPU-bound, keep it off the loop."""
        return await asyncio.to_thread(self.write, ip)

    def exists(self) -> bool:
        return self.pubkey_path.is_file() and self.privkey_path.is_file()
