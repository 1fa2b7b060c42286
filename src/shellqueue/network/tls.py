"""TLS material for the control socket."""

import os
import ssl
from datetime import datetime, timedelta, timezone
from pathlib import Path

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..core.errors import ConfigError


logger = structlog.get_logger()


SERVER_NAME = "localhost"
CERT_VALID_DAYS = 3650


def generate_certificate(cert_path: Path, key_path: Path) -> None:
    """Write a self-signed certificate and key for ``SERVER_NAME``."""
    cert_path, key_path = Path(cert_path), Path(key_path)
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, SERVER_NAME),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "shellqueue"),
    ])
    now = datetime.now(timezone.utc)

    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=CERT_VALID_DAYS))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(SERVER_NAME)]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(key.public_key()),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(str(key_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
    cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    logger.info("certificate_generated", cert=str(cert_path), key=str(key_path))


def ensure_certificate(cert_path: Path, key_path: Path) -> None:
    """Generate material on first start; never overwrite one half of a pair."""
    cert_exists, key_exists = Path(cert_path).exists(), Path(key_path).exists()
    if cert_exists and key_exists:
        return
    if cert_exists != key_exists:
        raise ConfigError(
            "Only one of daemon certificate and key exists",
            config_path=str(cert_path if cert_exists else key_path),
        )
    generate_certificate(cert_path, key_path)


def server_context(cert_path: Path, key_path: Path) -> ssl.SSLContext:
    """
    Raises:
        ConfigError: if the certificate or key cannot be loaded
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    try:
        context.load_cert_chain(str(cert_path), str(key_path))
    except (OSError, ssl.SSLError) as e:
        raise ConfigError(f"Cannot load TLS material: {e}", config_path=str(cert_path))
    return context


def client_context(cert_path: Path) -> ssl.SSLContext:
    """Trusts exactly the daemon's own certificate."""
    try:
        context = ssl.create_default_context(cafile=str(cert_path))
    except (OSError, ssl.SSLError) as e:
        raise ConfigError(f"Cannot load daemon certificate: {e}", config_path=str(cert_path))
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    # The pinned certificate is its own issuer, not a CA.
    context.verify_flags &= ~getattr(ssl, "VERIFY_X509_STRICT", 0)
    return context
