"""
Error taxonomy for Wilma scraping.

Only InvalidInput, LoginFailed and SessionFailure ever leave the pipeline.
A view that fails to extract is not an error; it degrades to empty data.
"""


class ScrapeError(Exception):
    """Base class for errors that end a scrape job."""

    status = 500
    kind = "internal"

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidInput(ScrapeError):
    """Missing credentials or a malformed request."""

    status = 400
    kind = "invalid_input"


class LoginFailed(ScrapeError):
    """The portal rejected the credentials."""

    status = 401
    kind = "login_failed"


class SessionFailure(ScrapeError):
    """Browser or transport failure outside of a single view."""

    status = 500
    kind = "session_failure"
