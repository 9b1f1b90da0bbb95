"""
Typed errors for session acquisition.

Every error carries a stable ``kind`` used in logs and in the operator
notification, so the failure report names the exact cause.
"""

from typing import Optional, Sequence


class AcquisitionError(Exception):
    """Base class for everything that can end (or disturb) an acquisition run."""

    kind = "AcquisitionError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.screenshot_path: Optional[str] = None

    def describe(self) -> str:
        return f"{self.kind}: {self.message}"


class ConfigError(AcquisitionError):
    kind = "ConfigError"


class RestoreInvalid(AcquisitionError):
    """Cached snapshot was loaded but the site did not accept it."""

    kind = "RestoreInvalid"


class SubmitPathNotFound(AcquisitionError):
    kind = "SubmitPathNotFound"

    def __init__(self, message: str, tried: Sequence[str] = ()):
        self.tried = list(tried)
        if self.tried:
            message = f"{message} (tried: {', '.join(self.tried)})"
        super().__init__(message)


class LoginRejected(AcquisitionError):
    """Credential submission ended on an error banner or stayed on the login form."""

    kind = "LoginRejected"


class DeviceApprovalTimedOut(AcquisitionError):
    kind = "DeviceApprovalTimedOut"


class CodeTimedOut(AcquisitionError):
    kind = "CodeTimedOut"


class CodeRejected(AcquisitionError):
    kind = "CodeRejected"


class AttemptsExhausted(AcquisitionError):
    kind = "AttemptsExhausted"

    def __init__(self, attempts: int):
        super().__init__(f"Code verification failed after {attempts} attempts")
        self.attempts = attempts


class ClassificationAmbiguous(AcquisitionError):
    kind = "ClassificationAmbiguous"


class BrowserFailure(AcquisitionError):
    """Playwright raised outside any handled step (navigation timeout, crashed page, ...)."""

    kind = "BrowserFailure"


class UnexpectedFailure(AcquisitionError):
    """Any other exception escaping an acquisition; the original is chained as __cause__."""

    kind = "UnexpectedFailure"


class PersistFailure(AcquisitionError):
    """Snapshot could not be saved; the login itself still counts as a success."""

    kind = "PersistFailure"
