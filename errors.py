"""
errors.py
---------
FHT Message Service — Exception Taxonomy
----------------------------------------
Every failure the delivery pipeline distinguishes has its own exception
type. The orchestrator decides what each one means for the batch:

    ConfigUnavailable    remote login / config fetch failed → local values
    DirectoryError       no output directory for an EMR group → group failed
      ├─ DirectoryNotFound
      └─ UnsupportedEmr
    InvalidRecord        record lacks patient id / observation identifier
    WriteError           serialise / encode / filesystem failure for a record
    StreamProtocolError  bad frame or payload on the WebSocket front end
    ConfigFileError      local settings unreadable — fatal at startup
    ApiError             non-2xx or transport failure talking to an API

Project: FHT Message Service
"""

from typing import Optional


class MessageServiceError(Exception):
    """Base class for all message service errors."""


class ConfigUnavailable(MessageServiceError):
    """Raised when the remote configuration cannot be obtained."""


class ConfigFileError(MessageServiceError):
    """Raised when the local settings file is missing or invalid."""


class DirectoryError(MessageServiceError):
    """Raised when no output directory can be determined for an EMR kind."""

    def __init__(self, emr_kind: str, reason: str) -> None:
        self.emr_kind = emr_kind
        self.reason = reason
        super().__init__(f"{emr_kind}: {reason}")


class DirectoryNotFound(DirectoryError):
    """No configured or discoverable directory for a supported EMR."""


class UnsupportedEmr(DirectoryError):
    """The EMR kind has no directory lookup."""

    def __init__(self, emr_kind: str) -> None:
        super().__init__(emr_kind, f"Invalid EMR software '{emr_kind}'")


class InvalidRecord(MessageServiceError):
    """Raised when a record is missing a mandatory identity field."""


class WriteError(MessageServiceError):
    """Raised when a message cannot be written; the cause is chained."""


class StreamProtocolError(MessageServiceError):
    """Raised for non-text frames or unparseable stream payloads."""

    def __init__(self, message: str, close_code: int = 1007) -> None:
        self.close_code = close_code
        super().__init__(message)


class ApiError(MessageServiceError):
    """Raised when an API call returns a non-2xx response or fails in transit."""

    def __init__(self, status_code: int, body: str, url: Optional[str] = None) -> None:
        self.status_code = status_code
        self.body = body
        self.url = url
        target = f" ({url})" if url else ""
        super().__init__(f"API error {status_code}{target}: {body}")
