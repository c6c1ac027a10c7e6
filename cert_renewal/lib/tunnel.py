"""Double-hop SSH connection to a target host through a bastion."""

import logging

import paramiko

from .config import SSHSettings
from .errors import HostConnectionError
from .remote_session import SSHRemoteSession

logger = logging.getLogger(__name__)


def _new_client(settings: SSHSettings) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    if settings.host_key_policy == "reject":
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.RejectPolicy())
    else:
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    return client


def connect_through_bastion(
    bastion: str,
    host: str,
    username: str,
    settings: SSHSettings,
) -> SSHRemoteSession:
    """Connect to ``host`` by tunnelling through ``bastion``.

    1. Connect and authenticate to the bastion
    2. Ask the bastion to open a direct-tcpip channel to host:port
    3. Authenticate a second SSH session over that channel

    Both hops use the same username and key. If the second or third step
    fails, the bastion connection is closed before the error propagates.

    Args:
        bastion: Jump host hostname
        host: Target hostname as resolved from the bastion
        username: SSH user on both hosts
        settings: Key file, port and timeouts

    Returns:
        Session owning both hops

    Raises:
        HostConnectionError: If either hop cannot be established
    """
    key_filename = str(settings.key_filename.expanduser())
    bastion_client = _new_client(settings)

    try:
        bastion_client.connect(
            bastion,
            port=settings.port,
            username=username,
            key_filename=key_filename,
            timeout=settings.connect_timeout,
            banner_timeout=settings.connect_timeout,
            auth_timeout=settings.connect_timeout,
        )
    except (paramiko.SSHException, OSError) as e:
        bastion_client.close()
        raise HostConnectionError(f"cannot connect to bastion {bastion}: {e}") from e

    logger.debug("Connected to bastion %s", bastion, extra={"host": host})

    try:
        transport = bastion_client.get_transport()
        if transport is None:
            raise paramiko.SSHException("bastion transport closed")
        channel = transport.open_channel(
            "direct-tcpip",
            dest_addr=(host, settings.port),
            src_addr=(bastion, settings.port),
            timeout=settings.connect_timeout,
        )
    except (paramiko.SSHException, OSError) as e:
        bastion_client.close()
        raise HostConnectionError(f"bastion {bastion} cannot forward to {host}: {e}") from e

    target_client = _new_client(settings)
    try:
        target_client.connect(
            host,
            port=settings.port,
            username=username,
            key_filename=key_filename,
            sock=channel,
            timeout=settings.connect_timeout,
            banner_timeout=settings.connect_timeout,
            auth_timeout=settings.connect_timeout,
        )
    except (paramiko.SSHException, OSError) as e:
        target_client.close()
        bastion_client.close()
        raise HostConnectionError(f"cannot connect to {host} via {bastion}: {e}") from e

    logger.info("Connected to %s via %s", host, bastion, extra={"host": host})

    return SSHRemoteSession(
        host=host,
        target_client=target_client,
        bastion_client=bastion_client,
        channel_timeout=settings.channel_timeout,
    )
