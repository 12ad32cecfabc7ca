# nexus_records/errors.py

from typing import Optional


class NexusError(Exception):
    """Base class for every failure raised by the record pipeline."""


class TransportError(NexusError):
    """Network, auth, HTTP or timeout failure while calling the reasoning engine."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StreamInterrupted(TransportError):
    """The stream ended before its completion sentinel."""

    def __init__(self, message: str, partial_text: str = ""):
        super().__init__(message)
        self.partial_text = partial_text


class MalformedResponse(NexusError):
    """The engine answered, but not in the shape the caller needs."""


class RequestAborted(NexusError):
    """An in-flight call was cancelled by the session owner."""


class ExtractionFailed(NexusError):
    """
    Report extraction did not produce a usable report. `partial_text` holds
    whatever streamed in before the failure; it may be shown as a partial
    result but never turned into records.
    """

    def __init__(
        self,
        cause: str,
        status_code: Optional[int] = None,
        partial_text: str = "",
    ):
        super().__init__(f"Extraction failed: {cause}")
        self.cause = cause
        self.status_code = status_code
        self.partial_text = partial_text
