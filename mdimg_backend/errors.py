from __future__ import annotations

from typing import Dict, Optional

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "CONFIGURATION_ERROR": {
        "message": "Service is misconfigured",
        "hint": "Check font paths and the renderer executable.",
    },
    "RENDER_FAILED": {
        "message": "Image rendering failed",
        "hint": "Please try again in a moment.",
    },
    "RENDER_TIMEOUT": {
        "message": "Image rendering timed out",
        "hint": "Shorten the answer or try again later.",
    },
    "STORAGE_ERROR": {
        "message": "Session storage is unavailable",
        "hint": "Please try again in a moment.",
    },
    "SESSION_NOT_FOUND": {
        "message": "Session not found",
        "hint": "Start a new question; old sessions expire after a period of inactivity.",
    },
    "MALFORMED_MARKDOWN": {
        "message": "Part of the answer could not be formatted",
        "hint": "The fragment is shown as plain text.",
    },
    "ANSWER_PROVIDER_ERROR": {
        "message": "The AI service did not answer",
        "hint": "Please try again in a moment.",
    },
    "INVALID_REQUEST": {
        "message": "Invalid request",
        "hint": "Check the identifiers you sent.",
    },
}


def describe_error(code: str) -> Dict[str, str]:
    return ERROR_CODE_MAP.get(code, {"message": "Internal error", "hint": ""})


class MdImgError(Exception):
    """Base class for every typed failure raised by the backend."""

    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code:
            self.code = code

    @property
    def user_message(self) -> str:
        return describe_error(self.code)["message"]


class ConfigurationError(MdImgError):
    """Missing font, renderer executable or an unparseable setting."""

    code = "CONFIGURATION_ERROR"


class RenderError(MdImgError):
    code = "RENDER_FAILED"
    retryable = True

    def __init__(self, message: str, *, stderr: str = "", timed_out: bool = False) -> None:
        super().__init__(message, code="RENDER_TIMEOUT" if timed_out else None)
        self.stderr = stderr
        self.timed_out = timed_out


class StorageError(MdImgError):
    code = "STORAGE_ERROR"
    retryable = True


class SessionNotFoundError(StorageError):
    code = "SESSION_NOT_FOUND"
    retryable = False

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class MalformedMarkdownFragment(MdImgError):
    """Raised for a fragment the parser cannot handle; always degraded to literal text."""

    code = "MALFORMED_MARKDOWN"

    def __init__(self, fragment: str) -> None:
        super().__init__("Markdown fragment could not be rendered")
        self.fragment = fragment


class AnswerProviderError(MdImgError):
    code = "ANSWER_PROVIDER_ERROR"
    retryable = True


class InvalidRequestError(MdImgError):
    """A caller-supplied identifier failed validation."""

    code = "INVALID_REQUEST"
