"""
Error taxonomy for the sandbox engine.

Every failure that ends a creation attempt is a SandboxError carrying a
human-readable message and, where available, the captured log tail that the
session exposes for diagnosis.
"""

from typing import Optional


class SandboxError(Exception):
    """Base class for sandbox engine failures."""

    def __init__(self, message: str, logs: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.logs = logs


class ContentValidationFailure(SandboxError):
    """A generated file failed validation. Recovered inside the sanitizer."""

    def __init__(self, path: str, rule: str):
        super().__init__(f"{path}: {rule}")
        self.path = path
        self.rule = rule


class MaterializationError(SandboxError):
    """The working directory could not be written."""


class PortExhaustionError(SandboxError):
    """No host port is free, even after reconciliation."""


class BuildFailure(SandboxError):
    """The image build exited with an error."""


class RuntimeCrash(SandboxError):
    """The container exited (or could not start) before becoming ready."""

    def __init__(self, message: str, exit_code: Optional[int] = None, logs: Optional[str] = None):
        super().__init__(message, logs)
        self.exit_code = exit_code


class RestartLoopDetected(SandboxError):
    """The container kept restarting during the probe window."""

    def __init__(self, restart_count: int, logs: Optional[str] = None):
        super().__init__(
            f"Container restarted {restart_count} times while starting up",
            logs,
        )
        self.restart_count = restart_count


class HealthCheckTimeout(SandboxError):
    """The dev server never became ready within the timeout budget."""

    def __init__(self, timeout: float, logs: Optional[str] = None):
        super().__init__(f"App did not become ready within {timeout:g}s", logs)
        self.timeout = timeout


class ProbeCancelled(SandboxError):
    """The session was stopped while provisioning was in flight."""


class SessionNotFound(SandboxError, KeyError):
    """No session with the given id is tracked."""

    def __init__(self, session_id: str):
        super().__init__(f"Unknown sandbox session: {session_id}")
        self.session_id = session_id

    def __str__(self) -> str:
        return self.message


class InvalidSessionState(SandboxError):
    """The requested operation is not allowed in the session's current state."""
