"""JSON-serializable report of a renewal run."""

from typing import TypedDict

from .models import FrozenHostRenewalState, HostStatus, RenewalError


class CertEntry(TypedDict):
    csr: str
    cert: str


class ErrorEntry(TypedDict):
    path: str | None
    type: str
    message: str


class HostReport(TypedDict):
    """Outcome of one host, as printed at the end of a run."""

    host: str
    user: str
    certs_dir: str
    status: str
    certsByPath: dict[str, CertEntry]
    errors: list[ErrorEntry]


class RunReport(TypedDict):
    completed: int
    failed: int
    hosts: list[HostReport]


def error_to_dict(error: RenewalError) -> ErrorEntry:
    return ErrorEntry(
        path=error.path,
        type=type(error.error).__name__,
        message=str(error.error),
    )


def host_state_to_dict(state: FrozenHostRenewalState) -> HostReport:
    """Convert a terminal host state to its report entry."""
    return HostReport(
        host=state.target.host,
        user=state.target.user,
        certs_dir=state.target.certs_dir,
        status=str(state.status),
        certsByPath={
            path: CertEntry(csr=record.csr_pem, cert=record.cert_pem)
            for path, record in state.certs_by_path.items()
        },
        errors=[error_to_dict(error) for error in state.errors],
    )


def build_report(states: list[FrozenHostRenewalState]) -> RunReport:
    """Summarize all host states, preserving host order."""
    failed = sum(1 for state in states if state.status == HostStatus.ERROR)
    return RunReport(
        completed=len(states) - failed,
        failed=failed,
        hosts=[host_state_to_dict(state) for state in states],
    )
