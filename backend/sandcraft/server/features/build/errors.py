class BuildError(Exception):
    """Base class for sandbox and agent orchestration failures.

    `code` is the short machine-readable tag sent to clients in error packets.
    """

    code = "internal"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class ConflictError(BuildError):
    """A non-terminated sandbox already exists for the project"""

    code = "conflict"


class BusyError(ConflictError):
    """Agent is already processing a request"""

    code = "busy"


class InvalidStateError(BuildError):
    """Operation is not allowed in the sandbox's current state"""

    code = "invalid_state"


class NotFoundError(BuildError):
    """Requested project or sandbox does not exist"""

    code = "not_found"


class ForbiddenError(BuildError):
    """Caller does not own the requested project"""

    code = "forbidden"


class ProvisionFailedError(BuildError):
    """Remote sandbox could not be provisioned"""

    code = "provision_failed"


class ProviderUnavailableError(BuildError):
    """Remote sandbox provider call failed"""

    code = "provider_unavailable"


class SandboxNotFoundError(ProviderUnavailableError):
    """Remote provider no longer knows about the sandbox"""


class CommandTimeoutError(BuildError):
    """Command exceeded its time limit"""

    code = "timeout"


class ParseSkippedError(BuildError):
    """Line emitted by the agent runtime is not a protocol event"""

    code = "parse_skipped"
