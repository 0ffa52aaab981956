"""Error types raised by the scanning pipeline."""


class ScanError(Exception):
    """Base class for all cardscan errors."""


class CoordinateSpaceError(ScanError, TypeError):
    """A rectangle was passed to a function expecting a different space."""


class InvalidRegion(ScanError, ValueError):
    """A crop rectangle falls outside the capture extent or is empty."""


class InvalidImage(ScanError, ValueError):
    """A malformed pixel buffer reached the recognition adapter."""


class PreprocessingDegraded(ScanError):
    """A preprocessing stage failed; the chain continued with the last good image."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"Stage '{stage}' failed: {cause}")
        self.stage = stage
        self.cause = cause


class CapabilityDenied(ScanError):
    """A precondition for starting a session (camera access) is not met."""
