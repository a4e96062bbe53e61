"""Self-signed PKCS#12 keystores for the HTTPS connector."""
from __future__ import annotations

import ipaddress
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

LOGGER = logging.getLogger(__name__)

KEYSTORE_FILE = "keystore.p12"
PASSWORD_FILE = "keystore.pass"
CERT_VALIDITY_DAYS = 825


class KeystoreError(RuntimeError):
    """Raised when a keystore cannot be generated or opened."""


@dataclass(frozen=True)
class KeystoreMaterial:
    """Location and password of the keystore the connector will use."""

    path: Path
    password: str
    alias: str
    generated: bool = False


def ensure_keystore(
    certs_dir: Path,
    *,
    host: str,
    alias: str = "luceectl",
    dry_run: bool = False,
) -> KeystoreMaterial:
    """Return the instance keystore, generating it on first use.

    An existing ``keystore.p12`` with its ``keystore.pass`` is reused as is so
    browsers keep trusting an exception the developer already accepted.
    """
    keystore_path = certs_dir / KEYSTORE_FILE
    password_path = certs_dir / PASSWORD_FILE
    if keystore_path.is_file() and password_path.is_file():
        password = password_path.read_text(encoding="utf-8").strip()
        return KeystoreMaterial(path=keystore_path, password=password, alias=alias)

    password = secrets.token_urlsafe(24)
    if dry_run:
        return KeystoreMaterial(path=keystore_path, password=password, alias=alias, generated=True)

    payload = generate_self_signed(host=host, alias=alias, password=password)
    certs_dir.mkdir(parents=True, exist_ok=True)
    _write_private(keystore_path, payload)
    _write_private(password_path, (password + "\n").encode("utf-8"))
    LOGGER.info("Generated self-signed certificate for %s at %s", host, keystore_path)
    return KeystoreMaterial(path=keystore_path, password=password, alias=alias, generated=True)


def generate_self_signed(*, host: str, alias: str, password: str) -> bytes:
    """Return a PKCS#12 blob holding a fresh RSA key and self-signed certificate."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, host),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "luceectl development"),
        ]
    )
    now = datetime.now(tz=UTC)
    alt_names: list[x509.GeneralName] = [x509.DNSName(host)]
    if host != "localhost":
        alt_names.append(x509.DNSName("localhost"))
    alt_names.append(x509.IPAddress(ipaddress.ip_address("127.0.0.1")))
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=CERT_VALIDITY_DAYS))
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return pkcs12.serialize_key_and_certificates(
        name=alias.encode("utf-8"),
        key=key,
        cert=certificate,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode("utf-8")),
    )


def verify_keystore(path: Path, password: str) -> x509.Certificate:
    """Open a user supplied keystore and return its certificate."""
    try:
        data = path.read_bytes()
    except FileNotFoundError as exc:
        raise KeystoreError(f"Keystore not found: {path}") from exc
    try:
        _, certificate, _ = pkcs12.load_key_and_certificates(data, password.encode("utf-8"))
    except ValueError as exc:
        raise KeystoreError(f"Cannot open keystore {path}: {exc}") from exc
    if certificate is None:
        raise KeystoreError(f"Keystore {path} holds no certificate.")
    return certificate


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    os.chmod(path, 0o600)


__all__ = [
    "KeystoreError",
    "KeystoreMaterial",
    "ensure_keystore",
    "generate_self_signed",
    "verify_keystore",
]
