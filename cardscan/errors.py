"""Exceptions raised by the scanning pipeline.

Only EngineLoadError and CameraAccessError stop a session. The others are
reported as status and the scan loop carries on with the next pass.
"""


class CardScanError(Exception):
    """Base class for all cardscan errors."""


class EngineLoadError(CardScanError):
    """The OCR or visual matching engine failed to initialize."""


class CameraAccessError(CardScanError):
    """The frame source could not be opened or stopped producing frames."""


class RetrievalError(CardScanError):
    """The catalog search failed or returned a non-success response."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class PerCandidateFetchError(CardScanError):
    """A single candidate's reference image could not be fetched or decoded."""

    def __init__(self, uri: str, reason: str):
        super().__init__(f"{uri}: {reason}")
        self.uri = uri
        self.reason = reason
