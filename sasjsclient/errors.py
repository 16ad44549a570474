from __future__ import annotations

"""Error taxonomy raised by the request client, codec, poller and executors."""

from typing import Any


class SASjsError(RuntimeError):
    """Base class for every error raised by this package."""


class AuthenticationError(SASjsError):
    """Raised when the server refuses the current credentials."""


class LoginRequiredError(AuthenticationError):
    """Raised on 401 responses, invalid grants or a served login page."""

    def __init__(self, message: str = "You must be logged in to access this resource") -> None:
        super().__init__(message)


class AuthorizeError(AuthenticationError):
    """Raised when the server asks the user to confirm an authorization."""

    def __init__(self, message: str, confirm_url: str) -> None:
        super().__init__(message)
        self.confirm_url = confirm_url


class InvalidCsrfError(AuthenticationError):
    """Raised when a refreshed CSRF token is still rejected."""

    def __init__(self, message: str = "Invalid CSRF token!") -> None:
        super().__init__(message)


class TokenRefreshError(AuthenticationError):
    """Raised when an access token can no longer be refreshed."""


class NotFoundError(SASjsError):
    def __init__(self, url: str) -> None:
        super().__init__(f"Error: Resource at {url} was not found")
        self.url = url


class InternalServerError(SASjsError):
    def __init__(self, message: str = "Error: Internal server error.") -> None:
        super().__init__(message)


class CertificateError(SASjsError):
    """Raised when the server's TLS certificate is not trusted."""

    def __init__(self, message: str) -> None:
        super().__init__(
            f"{message}\nIf you are working with a self-signed certificate, "
            "set allow_insecure_requests=True in the client configuration."
        )


class RetryLimitError(SASjsError):
    def __init__(self, message: str = "Request retry limit exceeded") -> None:
        super().__init__(message)


class JobExecutionError(SASjsError):
    """Server-side program failure parsed from a response body."""

    def __init__(self, error_code: int | str, error_message: str, result: Any = None) -> None:
        super().__init__(f"Error Code {error_code}: {error_message}")
        self.error_code = error_code
        self.error_message = error_message
        self.result = result


class ComputeJobExecutionError(SASjsError):
    """Compute job that finished in a failed or error state."""

    def __init__(self, job: Any, log: str) -> None:
        super().__init__("Error: Job execution failed")
        self.job = job
        self.log = log


class JobStatePollError(SASjsError):
    def __init__(self, job_id: str, original: BaseException | str) -> None:
        detail = str(original)
        super().__init__(f"Error while polling job state for job {job_id}: {detail}")
        self.job_id = job_id
        self.original = original


class NoSessionStateError(SASjsError):
    """Session state endpoint answered without a state value."""

    def __init__(self, status: int, state_url: str, log_url: str) -> None:
        super().__init__(
            f"Could not get session state. Server responded with {status} "
            f"whilst checking state: {state_url}"
        )
        self.status = status
        self.state_url = state_url
        self.log_url = log_url


class SessionStateError(SASjsError):
    def __init__(self, session_id: str, state: str) -> None:
        super().__init__(f"Session {session_id} could not be started. State: {state}")
        self.session_id = session_id
        self.state = state


class WeboutResponseError(SASjsError):
    def __init__(self, url: str) -> None:
        super().__init__(f"Error: Could not parse webout response from {url}")
        self.url = url


class InvalidJsonError(SASjsError):
    def __init__(self, message: str = "Error: invalid Json string") -> None:
        super().__init__(message)


class JsonParseArrayError(SASjsError):
    def __init__(self) -> None:
        super().__init__("Can not parse array object to json.")


class ArgumentError(SASjsError, ValueError):
    """Raised for invalid table structures and arguments."""


class LengthExceededError(SASjsError, ValueError):
    def __init__(self) -> None:
        super().__init__("The max length of a string value in SASjs is 32765 characters.")


class SpecialMissingValueError(SASjsError, ValueError):
    def __init__(self) -> None:
        super().__init__(
            "A Special missing value can only be a single character from A to Z or _ or .[a-z] or ._"
        )
