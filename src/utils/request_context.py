"""
Request-scoped identity.

A RequestContext is created at the start of one logical request and thrown
away at its end. The verified identity is memoized on the instance only, so
it can never leak to another request or user.
"""

from __future__ import annotations

from typing import Callable, Optional

from loguru import logger

try:
    from ..errors import UnauthorizedError
except ImportError:
    from src.errors import UnauthorizedError


IdentityVerifier = Callable[[Optional[str]], Optional[str]]

_UNSET = object()


class RequestContext:
    """
    Carries the caller's credentials through one request.

    Args:
        credentials: Opaque token/session value handed to ``verifier``
        verifier: Callable returning the verified user id, or None when the
            credentials do not identify anyone
    """

    def __init__(self, credentials: Optional[str], verifier: IdentityVerifier):
        self._credentials = credentials
        self._verifier = verifier
        self._user_id = _UNSET
        self.verification_calls = 0

    @classmethod
    def for_user(cls, user_id: Optional[str]) -> "RequestContext":
        """Context whose identity is already known (background jobs, tests)."""
        return cls(user_id, lambda credentials: credentials)

    @property
    def user_id(self) -> Optional[str]:
        """Verified user id, or None for anonymous callers. Verified at most once."""
        if self._user_id is _UNSET:
            self.verification_calls += 1
            self._user_id = self._verifier(self._credentials) if self._credentials else None
        return self._user_id

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def require_user(self) -> str:
        """Return the verified user id or raise UnauthorizedError."""
        user_id = self.user_id
        if user_id is None:
            logger.debug("Rejected anonymous request")
            raise UnauthorizedError("No verified identity for this request")
        return user_id
