"""Server TLS material for the HTTP API."""

from __future__ import annotations

import datetime
import socket
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

log = structlog.get_logger(__name__)

_VALIDITY = datetime.timedelta(days=365)


@dataclass(frozen=True, slots=True)
class TLSFiles:
    certfile: str
    keyfile: str


def _write_pair(directory: str | Path, key, certs: Sequence[x509.Certificate]) -> TLSFiles:
    directory = Path(directory)
    certfile = directory / "server.crt"
    keyfile = directory / "server.key"
    certfile.write_bytes(b"".join(cert.public_bytes(serialization.Encoding.PEM) for cert in certs))
    keyfile.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    keyfile.chmod(0o600)
    return TLSFiles(certfile=str(certfile), keyfile=str(keyfile))


def generate_self_signed(directory: str | Path, hostname: str | None = None) -> TLSFiles:
    """Write a fresh self-signed certificate and key into *directory*."""
    hostname = hostname or socket.gethostname()
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + _VALIDITY)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return _write_pair(directory, key, [cert])


def extract_p12(p12_file: str | Path, password: str | None, directory: str | Path) -> TLSFiles:
    """Unpack a PKCS#12 bundle into PEM certificate and key files in *directory*.

    The certificate file holds the server certificate followed by any
    chain certificates from the bundle.

    Raises:
        ValueError: If the bundle cannot be decrypted or lacks a key or
            certificate.
        OSError: If *p12_file* cannot be read.
    """
    data = Path(p12_file).read_bytes()
    secret = password.encode() if password else None
    try:
        key, cert, chain = pkcs12.load_key_and_certificates(data, secret)
    except ValueError as exc:
        raise ValueError(f"failed to load {p12_file}: {exc}") from exc
    if key is None or cert is None:
        raise ValueError(f"failed to load {p12_file}: bundle needs a private key and a certificate")
    return _write_pair(directory, key, [cert, *chain])


def server_tls(
    pem_file: str | None,
    key_file: str | None,
    p12_file: str | None = None,
    p12_password: str | None = None,
) -> TLSFiles:
    """Resolve the certificate and key to serve with.

    *pem_file* may hold both the certificate and the key, in which case
    *key_file* can be omitted.  Without a PEM file a *p12_file* bundle is
    unpacked; with neither, a self-signed pair is generated.  Unpacked and
    generated files go to a fresh temporary directory.
    """
    if pem_file:
        return TLSFiles(certfile=pem_file, keyfile=key_file or pem_file)
    directory = tempfile.mkdtemp(prefix="clamav-gateway-tls-")
    if p12_file:
        log.debug("unpacking p12 bundle", p12_file=p12_file)
        return extract_p12(p12_file, p12_password, directory)
    files = generate_self_signed(directory)
    log.warning("no certificate configured, using a self-signed one", certfile=files.certfile)
    return files
