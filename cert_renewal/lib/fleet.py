"""Fleet-wide renewal: one pipeline per host, run concurrently."""

import logging
from concurrent.futures import ThreadPoolExecutor

from .config import CollectorSettings, HostTarget, SSHSettings
from .harvester import CsrHarvester
from .models import CAIdentity, FrozenHostRenewalState, HostRenewalState, HostStatus
from .pipeline import Connector, HostRenewalPipeline
from .tunnel import connect_through_bastion

logger = logging.getLogger(__name__)


class FleetCoordinator:
    """Runs a HostRenewalPipeline for every host and gathers the results."""

    def __init__(
        self,
        ca_identity: CAIdentity,
        bastion: str,
        ssh_settings: SSHSettings,
        collector: CollectorSettings,
        max_hosts: int | None = None,
        max_paths_per_host: int = 8,
        connector: Connector = connect_through_bastion,
    ) -> None:
        """Initialize coordinator.

        Args:
            ca_identity: CA shared read-only by every pipeline
            bastion: Jump host used for every target
            ssh_settings: SSH options for both hops
            collector: Remote collector artifact and invocation
            max_hosts: Maximum hosts renewed at the same time, None for all at once
            max_paths_per_host: Maximum concurrent CSRs per host
            connector: Opens tunnelled sessions
        """
        self.ca_identity = ca_identity
        self.bastion = bastion
        self.ssh_settings = ssh_settings
        self.harvester = CsrHarvester(collector)
        self.max_hosts = max_hosts
        self.max_paths_per_host = max_paths_per_host
        self.connector = connector

    def _renew_host(self, target: HostTarget) -> FrozenHostRenewalState:
        pipeline = HostRenewalPipeline(
            ca_identity=self.ca_identity,
            bastion=self.bastion,
            target=target,
            harvester=self.harvester,
            ssh_settings=self.ssh_settings,
            max_workers=self.max_paths_per_host,
            connector=self.connector,
        )
        try:
            return pipeline.run()
        except Exception as e:
            logger.exception("Unexpected failure renewing host", extra={"host": target.host})
            state = HostRenewalState(target=target, status=HostStatus.ERROR)
            state.record_host_error(e)
            return state.freeze()

    def renew_all(self, hosts: list[HostTarget]) -> list[FrozenHostRenewalState]:
        """Renew every host and return terminal states in input order.

        A failing host never stops or skips the others.
        """
        if not hosts:
            logger.info("No hosts configured")
            return []

        logger.info("Renewing %d hosts via %s", len(hosts), self.bastion)
        with ThreadPoolExecutor(
            max_workers=len(hosts) if self.max_hosts is None else min(self.max_hosts, len(hosts)),
            thread_name_prefix="renew-host",
        ) as executor:
            results = list(executor.map(self._renew_host, hosts))

        failed = sum(1 for state in results if state.status == HostStatus.ERROR)
        logger.info("Renewal finished: %d completed, %d failed", len(results) - failed, failed)
        return results
