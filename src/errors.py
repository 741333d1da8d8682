class ConfigurationError(Exception):
    """Server configuration is missing or unusable."""


class ValidationError(Exception):
    """Request rejected before any run or session is created."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class SessionError(Exception):
    """Browser provisioning or page creation exhausted its retries."""


class StepError(Exception):
    """A single step could not be performed or verified."""

    def __init__(self, message: str, selector: str | None = None, element: str | None = None):
        super().__init__(message)
        self.selector = selector
        self.element = element


class ElementNotFound(StepError):
    pass


class InteractionError(StepError):
    pass


class VerificationError(StepError):
    def __init__(self, message: str, selector: str | None = None, element: str | None = None,
                 expected: str | None = None, actual: str | None = None):
        super().__init__(message, selector=selector, element=element)
        self.expected = expected
        self.actual = actual


class PersistenceError(Exception):
    """A write to or read from the run store failed."""


class EvidenceError(Exception):
    """Screenshot capture or upload failed."""
