"""Collect pending CSRs from a remote host."""

import json
import logging
import posixpath
import shlex

from .config import CollectorSettings
from .errors import HarvestDataError, ProtocolError
from .models import CsrRecord
from .remote_session import RemoteSession

logger = logging.getLogger(__name__)


def parse_collected_csrs(content: bytes) -> list[CsrRecord]:
    """Parse the collector result file into CSR records.

    Expected shape: ``{"<destination path>": {"csr": "<PEM>"}, ...}``.

    Raises:
        HarvestDataError: If content is not valid JSON of that shape
    """
    try:
        payload = json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise HarvestDataError(f"collected CSRs are not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise HarvestDataError("collected CSRs must be a JSON object")

    records: list[CsrRecord] = []
    for path, entry in payload.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("csr"), str):
            raise HarvestDataError(f"entry for {path} has no csr string")
        records.append(CsrRecord(destination_path=path, csr_pem=entry["csr"]))
    return records


class CsrHarvester:
    """Push the collector artifact, run it and read back the CSRs it found."""

    def __init__(self, collector: CollectorSettings) -> None:
        """Initialize harvester.

        Args:
            collector: Collector script location, invocation and timeout
        """
        self.collector = collector

    def build_command(self, certs_dir: str) -> str:
        """Return the remote shell command that runs the collector in certs_dir."""
        return (
            f"{self.collector.env_init}; "
            f"cd {shlex.quote(certs_dir)} && "
            f"{self.collector.interpreter} {shlex.quote(self.collector.script_name)}"
        )

    def harvest(self, session: RemoteSession, certs_dir: str) -> list[CsrRecord]:
        """Collect pending CSRs from one host.

        Args:
            session: Open session to the target host (SFTP already open)
            certs_dir: Remote working directory for the collector

        Returns:
            CSR records, empty when nothing is pending

        Raises:
            ProtocolError: If transfer, execution or reading the result fails
            HarvestDataError: If the result file is malformed
        """
        remote_script = posixpath.join(certs_dir, self.collector.script_name)
        session.put_file(str(self.collector.script), remote_script)
        logger.debug("Uploaded collector to %s", remote_script, extra={"host": session.host})

        result = session.execute(self.build_command(certs_dir), timeout=self.collector.output_timeout)
        for line in result.output.splitlines():
            logger.info("collector: %s", line, extra={"host": session.host})

        if result.exit_status != 0:
            raise ProtocolError(
                f"collector on {session.host} exited with status {result.exit_status}"
            )

        content = session.read_file(posixpath.join(certs_dir, self.collector.result_file))
        records = parse_collected_csrs(content)
        logger.info("Collected %d CSRs", len(records), extra={"host": session.host})
        return records
