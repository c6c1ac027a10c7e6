#!/usr/bin/env python3
"""Renew certificates for every configured host through the bastion."""

import argparse
import json
import sys
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm

from cert_renewal.lib.cert_utils import load_ca_identity
from cert_renewal.lib.config import load_config
from cert_renewal.lib.errors import ConfigError
from cert_renewal.lib.fleet import FleetCoordinator
from cert_renewal.lib.logging_config import LOGGER, set_verbose
from cert_renewal.lib.report import build_report

EXIT_OK = 0
EXIT_HOST_FAILURES = 1
EXIT_CONFIG_ERROR = 2


def main(argv: list[str] | None = None) -> int:
    """Run a renewal over all configured hosts.

    Returns:
        Exit code (0 if every host completed, 1 if any host ended in error,
        2 if the configuration or CA material could not be loaded)
    """
    parser = argparse.ArgumentParser(
        description="Renew host certificates from pending CSRs via a bastion host"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Renewal configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Also write the JSON report to this file",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)

    set_verbose(args.verbose)

    try:
        config = load_config(args.config)
        ca_identity = load_ca_identity(config.ca)
    except ConfigError as e:
        LOGGER.error("Configuration error: %s", e)
        return EXIT_CONFIG_ERROR
    except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as e:
        LOGGER.error("Cannot load CA identity: %s", e)
        return EXIT_CONFIG_ERROR

    LOGGER.info("Loaded %d hosts from %s", len(config.hosts), args.config)

    coordinator = FleetCoordinator(
        ca_identity=ca_identity,
        bastion=config.bastion,
        ssh_settings=config.ssh,
        collector=config.collector,
        max_hosts=config.concurrency.max_hosts,
        max_paths_per_host=config.concurrency.max_paths_per_host,
    )
    results = coordinator.renew_all(config.hosts)
    report = build_report(results)

    rendered = json.dumps(report, indent=2)
    print(rendered)
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(rendered)

    if report["failed"] > 0:
        LOGGER.warning("%d of %d hosts failed", report["failed"], len(results))
        return EXIT_HOST_FAILURES

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
