"""Data models for host renewal state and outcomes."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric.types import CertificateIssuerPrivateKeyTypes

from .config import HostTarget


@dataclass(frozen=True)
class CAIdentity:
    """CA private key and certificate used to sign every renewed certificate.

    Loaded once per run and shared read-only by all signing threads.
    """

    private_key: CertificateIssuerPrivateKeyTypes
    certificate: x509.Certificate


class HostStatus(StrEnum):
    """Lifecycle of one host's renewal pipeline."""

    PENDING = "pending"
    CONNECTED = "connected"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (HostStatus.COMPLETED, HostStatus.ERROR)


@dataclass(frozen=True)
class CertRecord:
    """CSR and the certificate issued for it."""

    csr_pem: str
    cert_pem: str


@dataclass(frozen=True)
class RenewalError:
    """A failure recorded against a host.

    ``path`` is None for host-level failures (connection, protocol, harvest data)
    and the destination path for failures scoped to one certificate.
    """

    error: Exception
    path: str | None = None

    @property
    def is_host_level(self) -> bool:
        return self.path is None


@dataclass(frozen=True)
class CsrRecord:
    """One pending CSR collected from a host."""

    destination_path: str
    csr_pem: str


@dataclass(frozen=True)
class PathOutcome:
    """Result of signing and writing back one CSR.

    Exactly one of ``record`` and ``error`` is set.
    """

    path: str
    record: CertRecord | None = None
    error: Exception | None = None

    def __post_init__(self) -> None:
        if (self.record is None) == (self.error is None):
            raise ValueError("PathOutcome needs exactly one of record or error")


@dataclass(frozen=True)
class FrozenHostRenewalState:
    """Terminal, read-only snapshot of a host's renewal."""

    target: HostTarget
    status: HostStatus
    certs_by_path: Mapping[str, CertRecord]
    errors: tuple[RenewalError, ...]


@dataclass
class HostRenewalState:
    """Mutable renewal state owned by exactly one host pipeline."""

    target: HostTarget
    status: HostStatus = HostStatus.PENDING
    certs_by_path: dict[str, CertRecord] = field(default_factory=dict)
    errors: list[RenewalError] = field(default_factory=list)

    def record_host_error(self, error: Exception) -> None:
        self.errors.append(RenewalError(error=error))

    def apply_outcome(self, outcome: PathOutcome) -> None:
        """Fold one per-path outcome into the state."""
        if outcome.record is not None:
            self.certs_by_path[outcome.path] = outcome.record
        else:
            self.errors.append(RenewalError(error=outcome.error, path=outcome.path))

    def freeze(self) -> FrozenHostRenewalState:
        if not self.status.is_terminal:
            raise ValueError(f"cannot freeze non-terminal state {self.status}")
        return FrozenHostRenewalState(
            target=self.target,
            status=self.status,
            certs_by_path=MappingProxyType(dict(self.certs_by_path)),
            errors=tuple(self.errors),
        )
