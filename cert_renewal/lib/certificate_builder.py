"""Certificate builder for renewing certificates from collected CSRs."""

from datetime import datetime, timezone

from cryptography import x509

from .cert_utils import (
    add_calendar_years,
    deserialize_csr,
    generate_serial_number,
    serialize_certificate,
    signing_hash_for,
    validate_csr_signature,
)
from .errors import CsrVerificationError
from .models import CAIdentity

VALIDITY_YEARS = 1


class CertificateBuilder:
    """Builds renewed X.509 certificates signed by the CA identity."""

    @staticmethod
    def build_renewed_certificate(
        csr: x509.CertificateSigningRequest,
        ca_identity: CAIdentity,
        now: datetime | None = None,
    ) -> x509.Certificate:
        """Build a certificate from a CSR, signed by the CA.

        The CSR's subject, public key and requested extensions carry over
        unchanged; nothing is added. Validity runs from now for one calendar year.

        Args:
            csr: Certificate signing request collected from the host
            ca_identity: CA key and certificate (issuer)
            now: Issuance time, defaults to the current UTC time

        Returns:
            X.509 certificate signed by the CA

        Raises:
            CsrVerificationError: If the CSR self-signature is invalid
        """
        if not validate_csr_signature(csr):
            raise CsrVerificationError("csr failed verification")

        not_before = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        not_after = add_calendar_years(not_before, VALIDITY_YEARS)

        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(ca_identity.certificate.subject)
            .public_key(csr.public_key())
            .serial_number(generate_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
        )

        for extension in csr.extensions:
            builder = builder.add_extension(extension.value, critical=extension.critical)

        private_key = ca_identity.private_key
        return builder.sign(private_key, signing_hash_for(private_key))


def issue_certificate(csr_pem: str, ca_identity: CAIdentity) -> str:
    """Verify a PEM CSR and return the PEM certificate issued for it.

    Raises:
        CsrVerificationError: If the CSR cannot be parsed or fails verification
    """
    try:
        csr = deserialize_csr(csr_pem.encode("utf-8"))
    except ValueError as e:
        raise CsrVerificationError(f"invalid CSR: {e}") from e

    cert = CertificateBuilder.build_renewed_certificate(csr, ca_identity)
    return serialize_certificate(cert).decode("ascii")
