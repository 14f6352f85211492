"""
Turn failure taxonomy
"""

from typing import Optional


class PlaybraryError(Exception):
    """Base class for every whole-turn failure"""

    status_code = 500


class ValidationError(PlaybraryError):
    """Malformed or missing request field (never retried)"""

    status_code = 400


class AdmissionRejected(PlaybraryError):
    """The client already has the maximum number of turns in flight"""

    status_code = 429


class UpstreamError(PlaybraryError):
    """Failure reported by (or while talking to) a generation provider"""

    def __init__(self, message: str, label: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.label = label
        self.status = status


class UpstreamThrottled(UpstreamError):
    """HTTP 429 that outlived the backoff schedule"""


class UpstreamRejected(UpstreamError):
    """Safety / content filter refusal (never retried)"""


class MalformedUpstreamOutput(UpstreamError):
    """Unparsable or incomplete provider output"""


class UpstreamUnavailable(UpstreamError):
    """Network failure, timeout or non-2xx status"""
