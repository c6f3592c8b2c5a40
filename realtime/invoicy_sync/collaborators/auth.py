"""Auth providers."""

from __future__ import annotations

from typing import Optional

from .base import CurrentUser


class StaticAuthProvider:
    """Always reports the same user (or nobody).

    Used by the dashboard API, which takes the user from a request
    header, and by tests.
    """

    def __init__(self, user: Optional[CurrentUser] = None) -> None:
        self._user = user

    @classmethod
    def for_user_id(cls, user_id: Optional[str], email: Optional[str] = None) -> StaticAuthProvider:
        return cls(CurrentUser(id=user_id, email=email) if user_id else None)

    async def current_user(self) -> Optional[CurrentUser]:
        return self._user

    def sign_in(self, user: CurrentUser) -> None:
        self._user = user

    def sign_out(self) -> None:
        self._user = None
