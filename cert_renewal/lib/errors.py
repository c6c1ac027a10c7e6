"""Exception taxonomy for certificate renewal.

Host-scoped failures (connection, protocol, harvest data) end one host's
pipeline. Path-scoped failures (CSR verification, write) are recorded against
a single destination path and never stop sibling paths.
"""


class RenewalFailure(Exception):
    """Base class for all renewal failures."""


class ConfigError(RenewalFailure):
    """Configuration is missing required keys or cannot be parsed."""


class HostConnectionError(RenewalFailure):
    """Either hop of the bastion tunnel could not be established."""


class ProtocolError(RenewalFailure):
    """File transfer, remote execution or the SSH session itself failed."""


class HarvestDataError(RenewalFailure):
    """The collected CSR payload is malformed."""


class CsrVerificationError(RenewalFailure):
    """A CSR could not be parsed or its self-signature does not verify."""


class WriteError(RenewalFailure):
    """Writing a signed certificate back to the remote host failed."""


HOST_LEVEL_ERRORS = (HostConnectionError, ProtocolError, HarvestDataError)