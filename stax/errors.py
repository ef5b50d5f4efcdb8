"""
Error taxonomy for the pull pipeline

Every stage converts its underlying failures into one of these exceptions.
Anything that is not a StaxError is wrapped into InternalError by the
coordinator and is always terminal.
"""

from typing import List, Optional


def _tail(text: str, lines: int = 20) -> str:
    """
    Returns the last lines of a block of text
    """
    if not text:
        return ""
    return "\n".join(text.rstrip().splitlines()[-lines:])


class StaxError(Exception):
    """
    Base class for all pipeline errors
    """

    kind = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CredentialsNotFound(StaxError):
    """
    No source returned usable provider credentials
    """

    kind = "credentials_not_found"

    def __init__(self, install: str, tried: List[str], last_error: Optional[BaseException] = None,
                 headline: Optional[str] = None):
        self.install = install
        self.tried = list(tried)
        self.last_error = last_error

        message = headline or f"WP Engine credentials not found for install '{install}'"
        if self.tried:
            message += "\n\nTried:"
            for location in self.tried:
                message += f"\n  - {location}"
        if last_error is not None:
            message += f"\n\nLast error: {last_error}"
        super().__init__(message)


class SSHKeyNotFound(CredentialsNotFound):
    """
    No source returned a usable SSH private key
    """

    kind = "ssh_key_not_found"

    def __init__(self, name: str, tried: List[str], last_error: Optional[BaseException] = None):
        super().__init__(name, tried, last_error,
                         headline=f"SSH private key '{name}' not found in any location")


class CredentialsRejected(StaxError):
    """
    The provider API or the SSH gateway refused the credentials
    """

    kind = "credentials_rejected"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransportUnavailable(StaxError):
    """
    Network-level failure after retries
    """

    kind = "transport_unavailable"

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class HostKeyMismatch(CredentialsRejected):
    """
    The host presented a key that differs from the pinned fingerprint
    """

    kind = "host_key_mismatch"

    def __init__(self, host: str, expected: str, received: str):
        super().__init__(
            f"Host key for '{host}' does not match the pinned fingerprint "
            f"(expected {expected}, received {received})"
        )
        self.host = host
        self.expected = expected
        self.received = received


class RemoteCommandFailed(StaxError):
    """
    A remote command exited with a non-zero status
    """

    kind = "remote_command_failed"

    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stderr_tail = _tail(stderr)
        message = f"Remote command failed with exit code {exit_code}: {command}"
        if self.stderr_tail:
            message += f"\n{self.stderr_tail}"
        super().__init__(message)


class ExportEmpty(StaxError):
    """
    The downloaded dump is empty or unreadable
    """

    kind = "export_empty"

    def __init__(self, path: str, reason: str = "file is empty"):
        super().__init__(f"Database export {path} is not usable: {reason}")
        self.path = path
        self.reason = reason


class ImportFailed(StaxError):
    """
    The import subprocess failed
    """

    kind = "import_failed"

    def __init__(self, exit_code: Optional[int], stderr: str = ""):
        self.exit_code = exit_code
        self.stderr_tail = _tail(stderr)
        if exit_code is None:
            message = "Database import did not finish"
        else:
            message = f"Database import failed with exit code {exit_code}"
        if self.stderr_tail:
            message += f"\n{self.stderr_tail}"
        super().__init__(message)


class RewriteFailed(StaxError):
    """
    Terminal error from the URL rewriter
    """

    kind = "rewrite_failed"

    def __init__(self, table: str, cause: BaseException):
        super().__init__(f"URL rewrite failed on table '{table}': {cause}")
        self.table = table
        self.cause = cause


class SnapshotIOError(StaxError):
    """
    Filesystem error on the snapshot directory
    """

    kind = "snapshot_io"

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class BusyError(StaxError):
    """
    Another invocation holds the project lock
    """

    kind = "busy"

    def __init__(self, lock_path: str, pid: Optional[int] = None):
        owner = f" (held by PID {pid})" if pid else ""
        super().__init__(f"Another operation is running for this project{owner}: {lock_path}")
        self.lock_path = lock_path
        self.pid = pid


class LocalEnvironmentNotReady(StaxError):
    """
    The local DDEV project is not running
    """

    kind = "local_env_not_ready"

    def __init__(self, project_dir: str):
        super().__init__(f"The DDEV project in {project_dir} is not running; start it with 'ddev start'")
        self.project_dir = project_dir


class InvalidArgument(StaxError):
    """
    Input failed boundary validation
    """

    kind = "invalid_argument"

    def __init__(self, field: str, message: str):
        super().__init__(f"Invalid {field}: {message}")
        self.field = field


class Cancelled(StaxError):
    """
    The cancellation signal reached a stage
    """

    kind = "cancelled"

    def __init__(self, stage: str = ""):
        super().__init__(f"Operation cancelled{f' during {stage}' if stage else ''}")
        self.stage = stage


class InternalError(StaxError):
    """
    Unclassified failure; always terminal
    """

    kind = "internal"

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"Unexpected error during {stage}: {cause}")
        self.stage = stage
        self.cause = cause
