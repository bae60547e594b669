"""Exception taxonomy for vpnstack.

Every fatal error carries a ``category`` so the CLI can report what kind of
failure stopped the operation. Health timeouts are not errors: they are
reported through :class:`HealthTimeoutWarning`.
"""


class VpnstackError(Exception):
    """Base class for all fatal vpnstack errors."""

    category = "error"


class ParameterValidationError(VpnstackError):
    """Bad or missing parameter. Never proceeds to synthesis."""

    category = "validation"

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])


class StackEnvironmentError(VpnstackError):
    """Unsupported platform or missing required tool."""

    category = "environment"


class SecretIntegrityError(VpnstackError):
    """Attempt to regenerate or replace immutable secret material."""

    category = "secret-integrity"


class SynthesisError(VpnstackError):
    """Unsatisfiable flag combination or inconsistent artifact set."""

    category = "synthesis"


class SnapshotError(VpnstackError):
    """A backup or restore step failed."""

    category = "snapshot"


class HashingError(VpnstackError):
    """The password hashing collaborator is unavailable or failed."""

    category = "hashing"


class CredentialError(VpnstackError):
    """Invalid change to the credential store."""

    category = "credentials"


class LifecycleError(VpnstackError):
    """Operation not allowed in the current lifecycle state."""

    category = "lifecycle"


class CommandError(VpnstackError):
    """An external command failed."""

    category = "command"

    def __init__(self, message: str, returncode: int = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class HealthTimeoutWarning(UserWarning):
    """The data tier did not report healthy before the timeout elapsed."""
