"""Certificate utility functions for PEM handling, CSR checks and validity arithmetic."""

import uuid
from datetime import datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed448, ed25519
from cryptography.hazmat.primitives.asymmetric.types import CertificateIssuerPrivateKeyTypes

from .config import CAPaths
from .models import CAIdentity


def deserialize_private_key(pem_data: bytes) -> CertificateIssuerPrivateKeyTypes:
    """Deserialize a signing-capable private key from PEM bytes."""
    key = serialization.load_pem_private_key(pem_data, password=None)
    if not isinstance(key, CertificateIssuerPrivateKeyTypes):
        raise ValueError("CA private key type cannot sign certificates")
    return key


def serialize_certificate(cert: x509.Certificate) -> bytes:
    """Serialize certificate to PEM format."""
    return cert.public_bytes(serialization.Encoding.PEM)


def deserialize_certificate(pem_data: bytes) -> x509.Certificate:
    """Deserialize certificate from PEM bytes."""
    return x509.load_pem_x509_certificate(pem_data)


def deserialize_csr(pem_data: bytes) -> x509.CertificateSigningRequest:
    """Deserialize CSR from PEM bytes."""
    return x509.load_pem_x509_csr(pem_data)


def validate_csr_signature(csr: x509.CertificateSigningRequest) -> bool:
    """Verify CSR self-signature to prove private key possession.

    Returns:
        True if signature is valid, False otherwise (including unsupported algorithms)
    """
    try:
        return csr.is_signature_valid
    except Exception:
        return False


def generate_serial_number() -> int:
    """Generate certificate serial number from UUID4 (128-bit, ~122 bits of entropy)."""
    return uuid.uuid4().int


def signing_hash_for(
    private_key: CertificateIssuerPrivateKeyTypes,
) -> hashes.SHA256 | None:
    """Return the digest to sign with; EdDSA keys sign without a separate hash."""
    if isinstance(private_key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
        return None
    return hashes.SHA256()


def add_calendar_years(moment: datetime, years: int) -> datetime:
    """Advance a datetime by whole calendar years.

    Feb 29 in a target year without a leap day rolls over to Mar 1.
    """
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, month=3, day=1)


def load_ca_identity(paths: CAPaths) -> CAIdentity:
    """Load the CA certificate and private key from PEM files.

    Raises:
        FileNotFoundError: If either file does not exist
        ValueError: If either file does not hold valid PEM material
    """
    cert_path: Path = paths.cert
    key_path: Path = paths.key

    if not cert_path.exists():
        raise FileNotFoundError(f"CA cert not found: {cert_path}")
    if not key_path.exists():
        raise FileNotFoundError(f"CA key not found: {key_path}")

    return CAIdentity(
        private_key=deserialize_private_key(key_path.read_bytes()),
        certificate=deserialize_certificate(cert_path.read_bytes()),
    )
