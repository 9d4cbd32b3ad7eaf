# AppStack - Error Taxonomy

from typing import List, Optional, Sequence


class AppStackError(Exception):
    """Base class for every error raised by the orchestration core."""


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFound(AppStackError):
    """A referenced service, application or package does not exist."""


class ServiceNotFound(NotFound):
    def __init__(self, service: str, message: Optional[str] = None):
        self.service = service
        super().__init__(message or f"Unknown service: {service}")


class ApplicationNotFound(NotFound):
    def __init__(self, app_id: str):
        self.app_id = app_id
        super().__init__(f"Application {app_id} is not installed")


class BackupNotFound(NotFound):
    def __init__(self, filename: str):
        self.filename = filename
        super().__init__(f"Backup not found: {filename}")


class DatabaseNotFound(NotFound):
    def __init__(self, name: str, message: Optional[str] = None):
        self.name = name
        super().__init__(message or f"Database not found: {name}")


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class AlreadyExists(AppStackError):
    """Duplicate install or an already-claimed port."""


class AlreadyInstalled(AlreadyExists):
    def __init__(self, app_id: str):
        self.app_id = app_id
        super().__init__(f"Application {app_id} is already installed")


class PortUnavailable(AlreadyExists):
    def __init__(self, port: int, reason: str = "not available"):
        self.port = port
        super().__init__(f"Port {port} is {reason}")


# ---------------------------------------------------------------------------
# Exhaustion
# ---------------------------------------------------------------------------


class ResourceExhausted(AppStackError):
    pass


class NoPortsAvailable(ResourceExhausted):
    def __init__(self, start: int, end: int, count: int = 1):
        self.start = start
        self.end = end
        self.count = count
        if count == 1:
            msg = f"No available ports in range {start}-{end}"
        else:
            msg = f"Could not find {count} available ports in range {start}-{end}"
        super().__init__(msg)


# ---------------------------------------------------------------------------
# Process and platform failures
# ---------------------------------------------------------------------------


class ExternalProcessFailure(AppStackError):
    """A spawned command exited non-zero (or could not be launched at all)."""

    def __init__(self, command: Sequence[str], exit_code: int, stderr: str = ""):
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr
        msg = f"Command '{' '.join(self.command)}' failed with code {exit_code}"
        if stderr.strip():
            msg += f": {stderr.strip()}"
        super().__init__(msg)


class PlatformOperationFailure(AppStackError):
    """The native service manager rejected a command."""

    def __init__(self, service: str, message: str):
        self.service = service
        self.detail = message
        super().__init__(f"{service}: {message}")


class OperationTimeout(AppStackError):
    pass


# ---------------------------------------------------------------------------
# Packages, databases, installs
# ---------------------------------------------------------------------------


class ArchiveError(AppStackError):
    pass


class DatabaseError(AppStackError):
    pass


class InstallationFailed(AppStackError):
    """An install step failed; rollback has already run.

    ``cleanup_errors`` lists the rollback actions that failed in turn, so a
    caller never mistakes a partially cleaned install for a clean one.
    """

    def __init__(
        self,
        app_id: str,
        step: str,
        cause: BaseException,
        cleanup_errors: Optional[List[str]] = None,
    ):
        self.app_id = app_id
        self.step = step
        self.cause = cause
        self.cleanup_errors = list(cleanup_errors or [])
        msg = f"Installation of {app_id} failed at step '{step}': {cause}"
        if self.cleanup_errors:
            msg += "; cleanup also failed: " + "; ".join(self.cleanup_errors)
        super().__init__(msg)
