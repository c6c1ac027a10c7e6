"""Test fixtures for cert_renewal tests."""

import threading
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from cert_renewal.lib.config import CollectorSettings, HostTarget, SSHSettings
from cert_renewal.lib.errors import HostConnectionError, ProtocolError, WriteError
from cert_renewal.lib.models import CAIdentity
from cert_renewal.lib.remote_session import CommandResult


def generate_private_key(key_size: int = 2048) -> RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def make_name(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "GB"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Org"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def make_csr_pem(key: RSAPrivateKey, common_name: str, with_extensions: bool = False) -> str:
    builder = x509.CertificateSigningRequestBuilder().subject_name(make_name(common_name))
    if with_extensions:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(common_name)]),
            critical=False,
        ).add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
            critical=True,
        )
    csr = builder.sign(key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


def tamper_csr_pem(csr_pem: str) -> str:
    """Return a CSR whose signature no longer matches its content.

    Re-encodes the DER with one byte of the signature flipped.
    """
    csr = x509.load_pem_x509_csr(csr_pem.encode("ascii"))
    der = bytearray(csr.public_bytes(serialization.Encoding.DER))
    der[-1] ^= 0x01
    tampered = x509.load_der_x509_csr(bytes(der))
    return tampered.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture(scope="session")
def ca_key() -> RSAPrivateKey:
    """Generate RSA private key for the test CA."""
    return generate_private_key()


@pytest.fixture(scope="session")
def ca_cert(ca_key: RSAPrivateKey) -> x509.Certificate:
    """Generate self-signed test CA certificate."""
    name = make_name("Test Renewal CA")
    not_before = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(ca_key, hashes.SHA256())
    )


@pytest.fixture(scope="session")
def ca_identity(ca_key: RSAPrivateKey, ca_cert: x509.Certificate) -> CAIdentity:
    return CAIdentity(private_key=ca_key, certificate=ca_cert)


@pytest.fixture(scope="session")
def host_key() -> RSAPrivateKey:
    """Generate RSA private key owned by the renewal target."""
    return generate_private_key()


@pytest.fixture(scope="session")
def valid_csr_pem(host_key: RSAPrivateKey) -> str:
    return make_csr_pem(host_key, "web01.internal")


@pytest.fixture(scope="session")
def csr_with_extensions_pem(host_key: RSAPrivateKey) -> str:
    return make_csr_pem(host_key, "web02.internal", with_extensions=True)


@pytest.fixture(scope="session")
def invalid_csr_pem(valid_csr_pem: str) -> str:
    return tamper_csr_pem(valid_csr_pem)


@pytest.fixture
def target() -> HostTarget:
    return HostTarget(host="web01.internal", user="deploy", certs_dir="/etc/certs")


@pytest.fixture
def ssh_settings(tmp_path: Path) -> SSHSettings:
    return SSHSettings(key_filename=tmp_path / "id_rsa", connect_timeout=1.0, channel_timeout=1.0)


@pytest.fixture
def collector_settings(tmp_path: Path) -> CollectorSettings:
    script = tmp_path / "collect-csr.js"
    script.write_text("// collector\n")
    return CollectorSettings(script=script, output_timeout=1.0)


class FakeRemoteSession:
    """In-memory RemoteSession with configurable failures."""

    def __init__(self, host: str = "web01.internal", files: dict[str, bytes] | None = None) -> None:
        self.host = host
        self.files: dict[str, bytes] = dict(files or {})
        self.uploads: list[tuple[str, str]] = []
        self.commands: list[str] = []
        self.exit_status = 0
        self.output = "collected\n"
        self.sftp_error: Exception | None = None
        self.put_error: Exception | None = None
        self.execute_error: Exception | None = None
        self.failing_writes: set[str] = set()
        self.lost_transport: Exception | None = None
        self.on_write: Callable[[str], None] | None = None
        self.sftp_open = False
        self.closed = False
        self._lock = threading.Lock()

    def open_sftp(self) -> None:
        if self.sftp_error is not None:
            raise self.sftp_error
        self.sftp_open = True

    def put_file(self, local_path: str, remote_path: str) -> None:
        if self.put_error is not None:
            raise self.put_error
        self.uploads.append((local_path, remote_path))

    def execute(self, command: str, timeout: float) -> CommandResult:
        self.commands.append(command)
        if self.execute_error is not None:
            raise self.execute_error
        return CommandResult(exit_status=self.exit_status, output=self.output)

    def read_file(self, remote_path: str) -> bytes:
        try:
            return self.files[remote_path]
        except KeyError as e:
            raise ProtocolError(f"no such file {remote_path}") from e

    def write_file(self, remote_path: str, data: bytes) -> None:
        if self.on_write is not None:
            self.on_write(remote_path)
        if remote_path in self.failing_writes:
            raise WriteError(f"permission denied: {remote_path}")
        with self._lock:
            self.files[remote_path] = data

    def transport_error(self) -> Exception | None:
        return self.lost_transport

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_session() -> FakeRemoteSession:
    return FakeRemoteSession()


def connector_for(
    sessions: dict[str, FakeRemoteSession],
    unreachable: set[str] | None = None,
) -> Callable[[str, str, str, SSHSettings], FakeRemoteSession]:
    """Build a connector returning fake sessions keyed by host."""
    unreachable = unreachable or set()

    def _connect(bastion: str, host: str, username: str, settings: SSHSettings) -> FakeRemoteSession:
        if host in unreachable:
            raise HostConnectionError(f"cannot connect to bastion {bastion}: refused")
        return sessions[host]

    return _connect


@pytest.fixture
def session_factory() -> type[FakeRemoteSession]:
    return FakeRemoteSession


@pytest.fixture
def make_connector() -> Callable[..., Callable[[str, str, str, SSHSettings], FakeRemoteSession]]:
    return connector_for


@pytest.fixture(scope="session")
def csr_factory(host_key: RSAPrivateKey) -> Callable[[str], str]:
    """Return a function producing a valid CSR PEM for a common name."""

    def _make(common_name: str) -> str:
        return make_csr_pem(host_key, common_name)

    return _make


class SerialOnlySftp:
    """SFTP client double that fails requests issued while another is in flight.

    A shared paramiko.SFTPClient mismatches replies under concurrent use and the
    losing request times out; this double fails the overlapping request the same
    way so tests can tell whether callers serialize their SFTP calls.
    """

    def __init__(self, files: dict[str, bytes] | None = None, latency: float = 0.005) -> None:
        self.files: dict[str, bytes] = dict(files or {})
        self.overlaps = 0
        self.closed = False
        self._latency = latency
        self._in_flight = 0
        self._counter_lock = threading.Lock()
        self._channel = MagicMock(name="sftp-channel")

    @contextmanager
    def _request(self):
        with self._counter_lock:
            self._in_flight += 1
            overlapping = self._in_flight > 1
            if overlapping:
                self.overlaps += 1
        try:
            time.sleep(self._latency)
            if overlapping:
                raise TimeoutError("timed out waiting for sftp response")
            yield
        finally:
            with self._counter_lock:
                self._in_flight -= 1

    def get_channel(self) -> MagicMock:
        return self._channel

    def put(self, local_path: str, remote_path: str) -> None:
        with self._request():
            self.files[remote_path] = Path(local_path).read_bytes()

    @contextmanager
    def open(self, remote_path: str, mode: str = "r"):
        with self._request():
            if mode == "r" and remote_path not in self.files:
                raise FileNotFoundError(remote_path)
        yield _SftpFile(self, remote_path)

    def close(self) -> None:
        self.closed = True


class _SftpFile:
    def __init__(self, sftp: SerialOnlySftp, remote_path: str) -> None:
        self._sftp = sftp
        self._path = remote_path

    def read(self) -> bytes:
        with self._sftp._request():
            return self._sftp.files[self._path]

    def write(self, data: bytes) -> None:
        with self._sftp._request():
            self._sftp.files[self._path] = data


@pytest.fixture
def serial_only_sftp() -> SerialOnlySftp:
    return SerialOnlySftp()


@pytest.fixture
def ssh_target_client(serial_only_sftp: SerialOnlySftp) -> MagicMock:
    """Mocked paramiko target client whose SFTP rejects overlapping requests.

    Remote commands exit 0 with no output.
    """
    client = MagicMock(name="target")
    transport = client.get_transport.return_value
    transport.is_active.return_value = True
    channel = transport.open_session.return_value
    channel.recv.return_value = b""
    channel.status_event.wait.return_value = True
    channel.recv_exit_status.return_value = 0
    client.open_sftp.return_value = serial_only_sftp
    return client
