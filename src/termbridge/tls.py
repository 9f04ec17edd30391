"""TLS certificates for serving wss:// and pinning them from the client."""

import datetime
import hashlib
import ipaddress
import ssl
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def _subject_alt_names(hostname: str) -> list[x509.GeneralName]:
    names: list[x509.GeneralName] = [
        x509.DNSName("localhost"),
        x509.IPAddress(ipaddress.IPv4Address("127.0.0.1")),
    ]
    try:
        addr = ipaddress.ip_address(hostname)
    except ValueError:
        if hostname != "localhost":
            names.append(x509.DNSName(hostname))
    else:
        if str(addr) != "127.0.0.1":
            names.append(x509.IPAddress(addr))
    return names


def format_fingerprint(der: bytes) -> str:
    """Colon-separated SHA-256 of a DER certificate."""
    return hashlib.sha256(der).digest().hex(":")


def generate_self_signed_cert(
    cert_path: Path,
    key_path: Path,
    hostname: str = "localhost",
    days_valid: int = 365,
) -> str:
    """Write a self-signed certificate and key for hostname.

    Returns the SHA-256 fingerprint of the certificate.
    """
    private_key = ec.generate_private_key(ec.SECP256R1())

    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, hostname),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "termbridge"),
    ])
    now = datetime.datetime.now(datetime.timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=days_valid))
        .add_extension(
            x509.SubjectAlternativeName(_subject_alt_names(hostname)),
            critical=False,
        )
        .add_extension(
            x509.BasicConstraints(ca=True, path_length=0),
            critical=True,
        )
        .sign(private_key, hashes.SHA256())
    )

    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_bytes(private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    key_path.chmod(0o600)

    cert_path.parent.mkdir(parents=True, exist_ok=True)
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    cert_path.chmod(0o644)

    return cert.fingerprint(hashes.SHA256()).hex(":")


def get_cert_fingerprint(cert_path: Path) -> str:
    """Get the SHA-256 fingerprint of an existing certificate."""
    cert = x509.load_pem_x509_certificate(cert_path.read_bytes())
    return cert.fingerprint(hashes.SHA256()).hex(":")


def create_server_ssl_context(cert_path: Path, key_path: Path) -> ssl.SSLContext:
    """SSL context for the server; TLS 1.2 is the floor so browsers connect."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
    return ctx


def create_client_ssl_context(ca_cert_path: Path | None = None) -> ssl.SSLContext:
    """SSL context for the terminal client.

    With a CA file the server is verified normally. Without one, chain
    verification is off and the caller is expected to pin the fingerprint
    with peer_fingerprint_matches().
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2

    if ca_cert_path and ca_cert_path.exists():
        ctx.load_verify_locations(cafile=str(ca_cert_path))
    else:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE

    return ctx


def peer_fingerprint_matches(ssl_object: ssl.SSLObject | None, expected: str) -> bool:
    if ssl_object is None:
        return False
    der = ssl_object.getpeercert(binary_form=True)
    if not der:
        return False
    return format_fingerprint(der).lower() == expected.lower()
