"""
Error taxonomy shared by every component.

Validation and ownership errors are surfaced immediately and never retried.
Upstream errors come from the embedding provider or the generative model
(including timeouts). NotFoundError is also raised for entities the caller
cannot see, so existence never leaks across owners.
"""

from __future__ import annotations

from typing import Any, Dict


class LearningCoreError(Exception):
    """Base class for all errors raised by the learning core."""

    status_code: int = 500
    code: str = "internal_error"
    user_message: str = "Something went wrong. Please try again."

    def __init__(self, message: str = "", user_message: str | None = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.user_message}


class ValidationError(LearningCoreError, ValueError):
    """Malformed or out-of-range input; user-correctable."""

    status_code = 400
    code = "validation_error"
    user_message = "The request is invalid. Please check the submitted data."

    def __init__(self, message: str = "", user_message: str | None = None):
        # Validation messages are safe to show as-is.
        super().__init__(message, user_message if user_message is not None else message or None)


class ForbiddenError(LearningCoreError):
    """Identity verified but lacks ownership or role."""

    status_code = 403
    code = "forbidden"
    user_message = "You do not have access to this resource."


class UnauthorizedError(ForbiddenError):
    """No verified identity."""

    status_code = 401
    code = "unauthorized"
    user_message = "Please sign in to continue."


class NotFoundError(LearningCoreError, LookupError):
    """Entity absent or invisible to the caller."""

    status_code = 404
    code = "not_found"
    user_message = "The requested item was not found."


class ConflictError(LearningCoreError):
    """Uniqueness violation."""

    status_code = 409
    code = "conflict"
    user_message = "This item already exists."


class UpstreamError(LearningCoreError):
    """Embedding or generative-model call failed or timed out."""

    status_code = 502
    code = "upstream_error"
    user_message = "An external AI service is unavailable. Please retry shortly."

    def __init__(
        self,
        message: str = "",
        user_message: str | None = None,
        timed_out: bool = False,
    ):
        super().__init__(message, user_message)
        self.timed_out = timed_out


class PipelineStateError(LearningCoreError):
    """Stage transition attempted from an invalid current status."""

    status_code = 409
    code = "pipeline_state_error"
    user_message = "The document is not ready for this step."


ERROR_STATUS_CODES = {
    cls.code: cls.status_code
    for cls in (
        ValidationError,
        UnauthorizedError,
        ForbiddenError,
        NotFoundError,
        ConflictError,
        UpstreamError,
        PipelineStateError,
    )
}


def error_response(exc: BaseException) -> tuple[int, Dict[str, Any]]:
    """
    Map an exception to (status_code, payload) for the presentation layer.

    Unknown exceptions never expose their message.
    """
    if isinstance(exc, LearningCoreError):
        return exc.status_code, exc.to_dict()
    return LearningCoreError.status_code, LearningCoreError().to_dict()
