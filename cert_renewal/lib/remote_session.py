"""Remote host session capability over a tunnelled SSH connection."""

import logging
import threading
from dataclasses import dataclass
from typing import Protocol

import paramiko

from .errors import ProtocolError, WriteError

logger = logging.getLogger(__name__)

RECV_BUFFER_SIZE = 32768


@dataclass(frozen=True)
class CommandResult:
    """Exit status and combined stdout/stderr of a remote command."""

    exit_status: int
    output: str


class RemoteSession(Protocol):
    """Operations the renewal pipeline needs from a target host."""

    host: str

    def open_sftp(self) -> None: ...

    def put_file(self, local_path: str, remote_path: str) -> None: ...

    def execute(self, command: str, timeout: float) -> CommandResult: ...

    def read_file(self, remote_path: str) -> bytes: ...

    def write_file(self, remote_path: str, data: bytes) -> None: ...

    def transport_error(self) -> Exception | None: ...

    def close(self) -> None: ...


class SSHRemoteSession:
    """Target host session tunnelled through a bastion.

    Owns both SSH clients; closing the session closes the target hop and then
    the bastion hop. paramiko.SFTPClient does not support concurrent
    requests, so every SFTP call holds the session lock.
    """

    def __init__(
        self,
        host: str,
        target_client: paramiko.SSHClient,
        bastion_client: paramiko.SSHClient,
        channel_timeout: float = 30.0,
    ) -> None:
        """Initialize session from two connected clients.

        Args:
            host: Target hostname, used in messages
            target_client: Client authenticated to the target over the forwarded channel
            bastion_client: Client authenticated to the bastion
            channel_timeout: Timeout in seconds for SFTP channel operations
        """
        self.host = host
        self._target = target_client
        self._bastion = bastion_client
        self._channel_timeout = channel_timeout
        self._sftp: paramiko.SFTPClient | None = None
        self._sftp_lock = threading.Lock()

    @property
    def sftp(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            raise ProtocolError(f"sftp session to {self.host} not open")
        return self._sftp

    def open_sftp(self) -> None:
        """Open the SFTP subsystem used for transfers and write-back."""
        try:
            self._sftp = self._target.open_sftp()
            self._sftp.get_channel().settimeout(self._channel_timeout)
        except (paramiko.SSHException, OSError) as e:
            raise ProtocolError(f"cannot open sftp session to {self.host}: {e}") from e

    def put_file(self, local_path: str, remote_path: str) -> None:
        try:
            with self._sftp_lock:
                self.sftp.put(local_path, remote_path)
        except (paramiko.SSHException, OSError) as e:
            raise ProtocolError(f"cannot upload {local_path} to {self.host}:{remote_path}: {e}") from e

    def execute(self, command: str, timeout: float) -> CommandResult:
        """Run a command and collect its output.

        ``timeout`` bounds every wait for output, so a command that stays
        silent for longer than ``timeout`` seconds fails.

        Raises:
            ProtocolError: If the channel cannot be opened or the command times out
        """
        transport = self._target.get_transport()
        if transport is None or not transport.is_active():
            raise ProtocolError(f"ssh transport to {self.host} is not active")

        channel = None
        try:
            channel = transport.open_session(timeout=self._channel_timeout)
            channel.set_combine_stderr(True)
            channel.settimeout(timeout)
            channel.exec_command(command)

            chunks: list[bytes] = []
            while True:
                data = channel.recv(RECV_BUFFER_SIZE)
                if not data:
                    break
                if not chunks:
                    logger.debug("First collector output from %s", self.host, extra={"host": self.host})
                chunks.append(data)

            if not channel.status_event.wait(timeout):
                raise ProtocolError(f"command on {self.host} sent no exit status within {timeout}s")
            exit_status = channel.recv_exit_status()
        except TimeoutError as e:
            raise ProtocolError(f"command on {self.host} timed out after {timeout}s") from e
        except (paramiko.SSHException, OSError) as e:
            raise ProtocolError(f"command on {self.host} failed: {e}") from e
        finally:
            if channel is not None:
                channel.close()

        return CommandResult(
            exit_status=exit_status,
            output=b"".join(chunks).decode("utf-8", errors="replace"),
        )

    def read_file(self, remote_path: str) -> bytes:
        try:
            with self._sftp_lock, self.sftp.open(remote_path, "r") as remote_file:
                return remote_file.read()
        except (paramiko.SSHException, OSError) as e:
            raise ProtocolError(f"cannot read {self.host}:{remote_path}: {e}") from e

    def write_file(self, remote_path: str, data: bytes) -> None:
        try:
            with self._sftp_lock, self.sftp.open(remote_path, "w") as remote_file:
                remote_file.write(data)
        except (paramiko.SSHException, OSError) as e:
            raise WriteError(f"cannot write {self.host}:{remote_path}: {e}") from e

    def transport_error(self) -> Exception | None:
        """Return a ProtocolError if the target transport has gone down."""
        transport = self._target.get_transport()
        if transport is not None and transport.is_active():
            return None

        cause = transport.get_exception() if transport is not None else None
        error = ProtocolError(f"ssh transport to {self.host} lost")
        error.__cause__ = cause
        return error

    def close(self) -> None:
        """Close SFTP, the target hop, then the bastion hop."""
        try:
            if self._sftp is not None:
                with self._sftp_lock:
                    self._sftp.close()
        finally:
            self._sftp = None
            try:
                self._target.close()
            finally:
                self._bastion.close()
