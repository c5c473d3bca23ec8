"""Error taxonomy shared by every layer.

Components raise these; only the orchestration boundary
(:mod:`tenantbox.service`) turns them into caller-facing outcomes, keyed on
``kind``.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all expected failures."""

    kind = "error"


# --- infrastructure -------------------------------------------------------


class TransientInfraError(OrchestratorError):
    """Runtime or network hiccup worth retrying with backoff."""

    kind = "transient_infra"


class PermanentConfigError(OrchestratorError):
    """Bad image, invalid mount, rejected client id. Retrying will not help."""

    kind = "permanent_config"


class RuntimeCommandError(OrchestratorError):
    """Container runtime call failed for an unclassified reason."""

    kind = "runtime"

    def __init__(self, message: str, *, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


# --- protocol / user ------------------------------------------------------


class ProtocolViolationError(OrchestratorError):
    """Interactive output or a provider response did not look as expected."""

    kind = "protocol_violation"

    def __init__(self, message: str, *, raw_output: str = "") -> None:
        super().__init__(message)
        self.raw_output = raw_output


class UserTimeoutError(OrchestratorError):
    """A wait stage ran out of time; the flow may still complete."""

    kind = "user_timeout"

    def __init__(self, message: str, *, stage: str = "") -> None:
        super().__init__(message)
        self.stage = stage


class ConflictError(OrchestratorError):
    kind = "conflict"


class ContainerConflictError(ConflictError):
    """The runtime refused a create because the name is taken."""


# --- not found ------------------------------------------------------------


class NotFoundError(OrchestratorError):
    kind = "not_found"


class SessionNotFoundError(NotFoundError):
    pass


class ContainerNotFoundError(NotFoundError):
    pass


class VolumeNotFoundError(NotFoundError):
    pass


class CredentialNotFoundError(NotFoundError):
    pass


class AuthSessionNotFoundError(NotFoundError):
    pass


# --- execution ------------------------------------------------------------


class ExecError(OrchestratorError):
    kind = "exec"


class ExecStartFailedError(ExecError):
    """The command could not be started inside the container."""


class StreamBrokenError(ExecError):
    """Reading from or writing to a running command failed mid-stream."""


class CommandFailedError(ExecError):
    def __init__(self, command: list[str], exit_code: int, output: str) -> None:
        super().__init__(f"{command[0] if command else '?'} exited with code {exit_code}")
        self.command = command
        self.exit_code = exit_code
        self.output = output


# --- authentication -------------------------------------------------------


class AuthError(OrchestratorError):
    kind = "auth"


class AuthStateError(AuthError):
    """The operation is not valid in the flow's current state."""


class AuthFailedError(AuthError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class AccessDeniedError(AuthFailedError):
    def __init__(self) -> None:
        super().__init__("authorization was denied by the user")


class DeviceCodeExpiredError(AuthFailedError):
    def __init__(self) -> None:
        super().__init__("device code expired before authorization completed")
