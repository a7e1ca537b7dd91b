"""Exception hierarchy for the intake pipeline."""


class IntakeError(Exception):
    """Base class for all pipeline errors."""


class ConfigMissing(IntakeError):
    """A required configuration file does not exist."""


class ConfigInvalid(IntakeError):
    """A configuration file exists but cannot be parsed or validated."""


class InvalidWorkerMode(IntakeError):
    """The requested worker mode is not one of the supported modes."""


class TenantNotFound(IntakeError):
    """No tenant configuration exists for a tenant id."""


class FileMissing(IntakeError):
    """A queued file is not present in the holding directory."""


class FileTooSmall(IntakeError):
    """A file is below the minimum size of a valid scan."""


class OcrServiceError(IntakeError):
    """The OCR service call failed and may succeed on a later attempt."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class UnsupportedDocument(OcrServiceError):
    """The OCR service rejected the document; retrying will not help."""
