"""Error taxonomy shared by the indices, the tool dispatcher and the response loop.

Tool-level errors are turned into tool results and never abort a run.
Run-level errors are caught once by the response loop and shown to the user
as a short notice built from ``user_message``.
"""

from typing import Optional

ERROR_PREFIX = "**Error:** "


class AssistantError(Exception):
    user_message = "Error generating the message"

    def __init__(self, message: str, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if user_message:
            self.user_message = user_message


class ArgumentError(AssistantError):
    """A tool call arrived with missing or malformed arguments."""


class SourceUnavailable(AssistantError):
    """The raw source behind an index could not be read."""


class ParseError(AssistantError):
    """A single raw record could not be parsed; the refresh skips it."""

    def __init__(self, message: str, source: str = "", location: str = "") -> None:
        super().__init__(message)
        self.source = source
        self.location = location


class UpstreamFailure(AssistantError):
    """The model endpoint or its transport failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        user_message: Optional[str] = None,
    ) -> None:
        super().__init__(message, user_message)
        self.status_code = status_code


class RateLimited(UpstreamFailure):
    user_message = "The assistant is receiving too many requests. Please try again shortly."


class StreamInterrupted(UpstreamFailure):
    user_message = "The response was interrupted. Please try again."


class MediaFetchError(AssistantError):
    user_message = "Failed to process the uploaded image."


def user_notice(exc: BaseException) -> str:
    if isinstance(exc, AssistantError):
        return ERROR_PREFIX + exc.user_message
    return ERROR_PREFIX + AssistantError.user_message
