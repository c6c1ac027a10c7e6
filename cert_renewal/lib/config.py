"""Renewal configuration dataclasses and YAML loading."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

REQUIRED_KEYS = ("ca", "bastion", "hosts")
HOST_KEYS = ("host", "user", "certs_dir")
HOST_KEY_POLICIES = ("auto-add", "reject")


@dataclass(frozen=True)
class HostTarget:
    """One host whose pending CSRs are renewed."""

    host: str
    user: str
    certs_dir: str


@dataclass(frozen=True)
class CAPaths:
    """Filesystem locations of the CA certificate and private key."""

    cert: Path
    key: Path


@dataclass(frozen=True)
class SSHSettings:
    """SSH options shared by both hops of the tunnel."""

    key_filename: Path = Path("~/.ssh/id_rsa")
    port: int = 22
    connect_timeout: float = 10.0
    channel_timeout: float = 30.0
    host_key_policy: str = "auto-add"


@dataclass(frozen=True)
class CollectorSettings:
    """Remote CSR collector artifact and how it is invoked."""

    script: Path = Path("scripts/collect-csr.js")
    env_init: str = ". .nvm/nvm.sh"
    interpreter: str = "node"
    output_timeout: float = 120.0
    result_file: str = "__COLLECTED__CSRS___.json"

    @property
    def script_name(self) -> str:
        return self.script.name


@dataclass(frozen=True)
class ConcurrencySettings:
    """Worker pool sizes for the fleet and per-host fan-out.

    ``max_hosts`` of None runs every host at once.
    """

    max_hosts: int | None = None
    max_paths_per_host: int = 8


@dataclass(frozen=True)
class RenewalConfig:
    """Complete renewal run configuration."""

    ca: CAPaths
    bastion: str
    hosts: list[HostTarget]
    ssh: SSHSettings = field(default_factory=SSHSettings)
    collector: CollectorSettings = field(default_factory=CollectorSettings)
    concurrency: ConcurrencySettings = field(default_factory=ConcurrencySettings)


def _require_mapping(value: Any, name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{name} entry must be a mapping")
    return value


def _parse_hosts(raw_hosts: Any) -> list[HostTarget]:
    if not isinstance(raw_hosts, list):
        raise ConfigError("hosts entry must be a list")

    hosts: list[HostTarget] = []
    for index, entry in enumerate(raw_hosts):
        if not isinstance(entry, dict):
            raise ConfigError(f"hosts[{index}] must be a mapping")
        missing = [key for key in HOST_KEYS if not entry.get(key)]
        if missing:
            raise ConfigError(f"hosts[{index}] missing {', '.join(missing)}")
        hosts.append(
            HostTarget(
                host=str(entry["host"]),
                user=str(entry["user"]),
                certs_dir=str(entry["certs_dir"]),
            )
        )
    return hosts


def _parse_ssh(raw: Any) -> SSHSettings:
    values = _require_mapping(raw, "ssh")
    defaults = SSHSettings()
    policy = str(values.get("host_key_policy", defaults.host_key_policy))
    if policy not in HOST_KEY_POLICIES:
        raise ConfigError(f"ssh.host_key_policy must be one of {', '.join(HOST_KEY_POLICIES)}")
    try:
        return SSHSettings(
            key_filename=Path(values.get("key_filename", defaults.key_filename)),
            port=int(values.get("port", defaults.port)),
            connect_timeout=float(values.get("connect_timeout", defaults.connect_timeout)),
            channel_timeout=float(values.get("channel_timeout", defaults.channel_timeout)),
            host_key_policy=policy,
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid ssh entry: {e}") from e


def _parse_collector(raw: Any, base_dir: Path) -> CollectorSettings:
    values = _require_mapping(raw, "collector")
    defaults = CollectorSettings()
    script = Path(values.get("script", defaults.script))
    if not script.is_absolute():
        script = base_dir / script
    try:
        return CollectorSettings(
            script=script,
            env_init=str(values.get("env_init", defaults.env_init)),
            interpreter=str(values.get("interpreter", defaults.interpreter)),
            output_timeout=float(values.get("output_timeout", defaults.output_timeout)),
            result_file=str(values.get("result_file", defaults.result_file)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid collector entry: {e}") from e


def _parse_concurrency(raw: Any) -> ConcurrencySettings:
    values = _require_mapping(raw, "concurrency")
    defaults = ConcurrencySettings()
    max_hosts = values.get("max_hosts", defaults.max_hosts)
    try:
        settings = ConcurrencySettings(
            max_hosts=None if max_hosts is None else int(max_hosts),
            max_paths_per_host=int(values.get("max_paths_per_host", defaults.max_paths_per_host)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid concurrency entry: {e}") from e
    if (settings.max_hosts is not None and settings.max_hosts < 1) or settings.max_paths_per_host < 1:
        raise ConfigError("concurrency limits must be at least 1")
    return settings


def parse_config(document: Any, base_dir: Path) -> RenewalConfig:
    """Build RenewalConfig from a parsed YAML document.

    Args:
        document: Result of yaml.safe_load
        base_dir: Directory relative paths (CA files, collector script) resolve against

    Returns:
        Validated RenewalConfig

    Raises:
        ConfigError: If ca, bastion or hosts is missing, or any entry is malformed
    """
    if not isinstance(document, dict):
        raise ConfigError("configuration must be a mapping")

    for key in REQUIRED_KEYS:
        value = document.get(key)
        # an empty hosts list is valid
        if value is None or (key != "hosts" and not value):
            raise ConfigError(f"{key} entry not provided")

    ca = _require_mapping(document["ca"], "ca")
    if not ca.get("cert") or not ca.get("key"):
        raise ConfigError("ca entry needs cert and key")

    def _resolve(value: Any) -> Path:
        path = Path(str(value)).expanduser()
        return path if path.is_absolute() else base_dir / path

    return RenewalConfig(
        ca=CAPaths(cert=_resolve(ca["cert"]), key=_resolve(ca["key"])),
        bastion=str(document["bastion"]),
        hosts=_parse_hosts(document["hosts"]),
        ssh=_parse_ssh(document.get("ssh")),
        collector=_parse_collector(document.get("collector"), base_dir),
        concurrency=_parse_concurrency(document.get("concurrency")),
    )


def load_config(config_path: Path) -> RenewalConfig:
    """Read and validate a YAML renewal configuration file.

    Raises:
        ConfigError: If the file cannot be read or parsed, or fails validation
    """
    try:
        document = yaml.safe_load(config_path.read_text())
    except OSError as e:
        raise ConfigError(f"cannot read config {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {config_path}: {e}") from e

    return parse_config(document, config_path.parent)
