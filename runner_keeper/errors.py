"""
Errors Module

Error taxonomy shared by the vault, registry and lifecycle components.
Every error names what it concerns and, where it helps, how to recover.
"""

from typing import Optional


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_AUTH = 3
EXIT_NOT_FOUND = 4
EXIT_REMOTE = 5
EXIT_CONFLICT = 6
EXIT_CORRUPT = 7
EXIT_TIMEOUT = 8
EXIT_WORKER = 9
EXIT_CANCELLED = 130


class RunnerKeeperError(Exception):
    """Base class for all recoverable runner-keeper errors"""

    exit_code = EXIT_FAILURE
    default_remediation: Optional[str] = None

    def __init__(self, message: str, subject: Optional[str] = None,
                 remediation: Optional[str] = None):
        self.subject = subject
        self.remediation = remediation or self.default_remediation
        if subject:
            message = f"{subject}: {message}"
        super().__init__(message)

    @property
    def kind(self) -> str:
        return type(self).__name__


class AuthError(RunnerKeeperError):
    """Wrong vault password"""

    exit_code = EXIT_AUTH
    default_remediation = "re-enter the password"


class NotFoundError(RunnerKeeperError):
    """No such credential or runner instance"""

    exit_code = EXIT_NOT_FOUND


class CorruptRecordError(RunnerKeeperError):
    """Vault file unreadable or malformed"""

    exit_code = EXIT_CORRUPT
    default_remediation = "clear the stored token and save it again"


class ConflictError(RunnerKeeperError):
    """Duplicate instance name or a transition already in progress"""

    exit_code = EXIT_CONFLICT
    default_remediation = "choose a different runner name or reuse the existing one"


class InvalidStateError(RunnerKeeperError):
    """Operation not permitted in the instance's current state"""

    exit_code = EXIT_CONFLICT


class RemoteAPIError(RunnerKeeperError):
    """The dispatch API rejected a request or could not be reached"""

    exit_code = EXIT_REMOTE

    def __init__(self, message: str, subject: Optional[str] = None,
                 status: Optional[int] = None, remediation: Optional[str] = None):
        self.status = status
        if remediation is None:
            remediation = self._remediation_for(status)
        super().__init__(message, subject=subject, remediation=remediation)

    @property
    def retryable(self) -> bool:
        """Network failures and 5xx responses may be retried; 4xx need user action"""
        return self.status is None or self.status >= 500

    @property
    def is_network_error(self) -> bool:
        return self.status is None

    @staticmethod
    def _remediation_for(status: Optional[int]) -> str:
        if status is None:
            return "check network connectivity to GitHub"
        if status == 401:
            return "the token is invalid or expired; save a new token"
        if status == 403:
            return "the token lacks permission; it needs admin access to the repository"
        if status == 404:
            return "check the repository name and that the token can see it"
        if status >= 500:
            return "GitHub is having problems; try again later"
        return "check the request and token"


class StartTimeoutError(RunnerKeeperError):
    """Worker did not report a successful handshake in time"""

    exit_code = EXIT_TIMEOUT
    default_remediation = "check the worker log and network connectivity"


class StopTimeoutError(RunnerKeeperError):
    """Worker did not exit even after being killed"""

    exit_code = EXIT_TIMEOUT
    default_remediation = "inspect the process manually"


class WorkerError(RunnerKeeperError):
    """Worker configure invocation failed or the worker exited early"""

    exit_code = EXIT_WORKER
    default_remediation = "check the worker log; clear and re-register if the configuration is stale"


class CancelledError(RunnerKeeperError):
    """A blocking operation observed the cancellation signal"""

    exit_code = EXIT_CANCELLED
