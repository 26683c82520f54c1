"""Error taxonomy shared by the pipeline stages.

Every stage raises one of these and the HTTP layer turns it into a JSON
error body. Nothing here is retried: a failure ends the request.
"""

from __future__ import annotations


class TrialMatchError(Exception):
    """Base class for failures surfaced to the caller."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(TrialMatchError):
    """Raised when a required secret (the LLM API key) is not configured."""

    def __init__(self, message: str = "Server configuration error: Missing API key."):
        super().__init__(message)


class BadRequest(TrialMatchError):
    """Raised for a missing, empty, or unparsable request body."""

    status_code = 400


class UpstreamRequestFailure(TrialMatchError):
    """An upstream service answered with a non-success status or could not be reached."""

    def __init__(self, message: str, upstream_status: int | None = None, body: str = ""):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.body = body


class UpstreamEmpty(TrialMatchError):
    """The LLM answered but returned no usable content."""


class UpstreamMalformed(TrialMatchError):
    """An upstream payload did not have the expected shape or was not valid JSON."""
