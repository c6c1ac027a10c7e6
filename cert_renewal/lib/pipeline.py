"""Per-host renewal pipeline: connect, harvest, sign and write back."""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from .certificate_builder import issue_certificate
from .config import HostTarget, SSHSettings
from .errors import HOST_LEVEL_ERRORS, HostConnectionError, ProtocolError, WriteError
from .harvester import CsrHarvester
from .models import (
    CAIdentity,
    CertRecord,
    CsrRecord,
    FrozenHostRenewalState,
    HostRenewalState,
    HostStatus,
    PathOutcome,
)
from .remote_session import RemoteSession
from .tunnel import connect_through_bastion

logger = logging.getLogger(__name__)

Connector = Callable[[str, str, str, SSHSettings], RemoteSession]


class SettleOnce:
    """Single-assignment slot for a host's terminal status."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._status: HostStatus | None = None

    def settle(self, status: HostStatus) -> bool:
        """Fill the slot; return False if it was already filled."""
        with self._lock:
            if self._status is not None:
                return False
            self._status = status
            return True

    @property
    def is_settled(self) -> bool:
        return self._status is not None

    @property
    def status(self) -> HostStatus | None:
        return self._status


class HostRenewalPipeline:
    """Drive one host from pending to completed or error.

    The pipeline thread is the only writer of the host state. Per-path workers
    sign and write one certificate each and report back a PathOutcome.
    """

    def __init__(
        self,
        ca_identity: CAIdentity,
        bastion: str,
        target: HostTarget,
        harvester: CsrHarvester,
        ssh_settings: SSHSettings,
        max_workers: int = 8,
        connector: Connector = connect_through_bastion,
    ) -> None:
        """Initialize pipeline for one host.

        Args:
            ca_identity: CA used to sign every CSR
            bastion: Jump host hostname
            target: Host, user and remote certs directory
            harvester: Collects CSRs from the target
            ssh_settings: Key, port and timeouts for both hops
            max_workers: Upper bound on concurrent per-path workers
            connector: Opens the tunnelled session
        """
        self.ca_identity = ca_identity
        self.bastion = bastion
        self.target = target
        self.harvester = harvester
        self.ssh_settings = ssh_settings
        self.max_workers = max_workers
        self.connector = connector
        self.state = HostRenewalState(target=target)
        self._terminal = SettleOnce()

    def _log_extra(self, path: str | None = None) -> dict[str, str]:
        extra = {"host": self.target.host}
        if path is not None:
            extra["path"] = path
        return extra

    def _settle(self, status: HostStatus) -> bool:
        if not self._terminal.settle(status):
            return False
        self.state.status = status
        logger.info("Host finished with status %s", status, extra=self._log_extra())
        return True

    def _fail_host(self, error: Exception) -> None:
        if self._settle(HostStatus.ERROR):
            self.state.record_host_error(error)
            logger.error("Host renewal failed: %s", error, extra=self._log_extra())
        else:
            logger.debug("Ignoring host error after settle: %s", error, extra=self._log_extra())

    def run(self) -> FrozenHostRenewalState:
        """Run the pipeline to a terminal state.

        Host-level failures are recorded in the returned state, never raised.
        """
        target = self.target
        try:
            session = self.connector(self.bastion, target.host, target.user, self.ssh_settings)
        except HostConnectionError as e:
            self._fail_host(e)
            return self.state.freeze()

        try:
            session.open_sftp()
            self.state.status = HostStatus.CONNECTED
            logger.info("Host connected", extra=self._log_extra())

            records = self.harvester.harvest(session, target.certs_dir)
            if not records:
                self._settle(HostStatus.COMPLETED)
            else:
                self._renew_all_paths(session, records)
        except HOST_LEVEL_ERRORS as e:
            self._fail_host(e)
        finally:
            try:
                session.close()
            except Exception as e:
                logger.warning("Closing session failed: %s", e, extra=self._log_extra())

        return self.state.freeze()

    def _renew_all_paths(self, session: RemoteSession, records: list[CsrRecord]) -> None:
        """Fan out one worker per CSR and join on all outcomes.

        Stops early only when the session reports a transport error; queued
        workers are cancelled and late outcomes are discarded.
        """
        total = len(records)
        completed = 0
        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, total),
            thread_name_prefix=f"renew-{self.target.host}",
        )
        try:
            pending: set[Future[PathOutcome | None]] = {
                executor.submit(self._renew_path, session, record) for record in records
            }
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    outcome = future.result()
                    completed += 1
                    if outcome is not None:
                        self.state.apply_outcome(outcome)

                transport_error = session.transport_error()
                if transport_error is not None and pending:
                    logger.warning(
                        "Transport lost with %d of %d paths resolved",
                        completed,
                        total,
                        extra=self._log_extra(),
                    )
                    self._fail_host(transport_error)
                    return
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        path_errors = [error for error in self.state.errors if not error.is_host_level]
        self._settle(HostStatus.ERROR if path_errors else HostStatus.COMPLETED)

    def _renew_path(self, session: RemoteSession, record: CsrRecord) -> PathOutcome | None:
        """Sign one CSR and write the certificate to its destination path.

        Returns None without touching the host once the host has settled.
        """
        path = record.destination_path
        if self._terminal.is_settled:
            return None

        try:
            cert_pem = issue_certificate(record.csr_pem, self.ca_identity)
        except Exception as e:
            logger.warning("Signing failed: %s", e, extra=self._log_extra(path))
            return PathOutcome(path=path, error=e)

        if self._terminal.is_settled:
            return None

        try:
            session.write_file(path, cert_pem.encode("ascii"))
        except WriteError as e:
            logger.warning("Write failed: %s", e, extra=self._log_extra(path))
            return PathOutcome(path=path, error=e)
        except ProtocolError as e:
            logger.warning("Write failed: %s", e, extra=self._log_extra(path))
            error = WriteError(f"cannot write {path}: {e}")
            error.__cause__ = e
            return PathOutcome(path=path, error=error)

        logger.info("Certificate renewed", extra=self._log_extra(path))
        return PathOutcome(path=path, record=CertRecord(csr_pem=record.csr_pem, cert_pem=cert_pem))
