"""Credentials used to connect to a server."""

from __future__ import annotations

from enum import Enum


class UserType(Enum):
    PUBLIC_USER = "public_user"
    REGULAR_USER = "regular_user"


class Credentials:
    """Anonymous or username/password credentials.

    The password is kept in a mutable buffer so it can be wiped once it has
    been sent. Two credentials are equal when their user type and username
    match; the password is never compared.
    """

    def __init__(
        self,
        user_type: UserType,
        username: str | None = None,
        password: str | bytes | bytearray | None = None,
    ):
        if user_type is UserType.REGULAR_USER and not username:
            raise ValueError("A regular user needs a username")

        self.user_type = user_type
        self.username = username if user_type is UserType.REGULAR_USER else None
        if user_type is UserType.PUBLIC_USER or password is None:
            self._password = bytearray()
        elif isinstance(password, str):
            self._password = bytearray(password.encode("utf-8"))
        else:
            self._password = bytearray(password)

    @classmethod
    def public(cls) -> Credentials:
        return cls(UserType.PUBLIC_USER)

    @classmethod
    def regular(cls, username: str, password: str | bytes | bytearray) -> Credentials:
        return cls(UserType.REGULAR_USER, username, password)

    @property
    def is_public(self) -> bool:
        return self.user_type is UserType.PUBLIC_USER

    @property
    def password(self) -> bytearray:
        """The password buffer itself (not a copy)."""
        return self._password

    def clear_password(self) -> None:
        """Overwrite the password buffer with zeros."""
        for i in range(len(self._password)):
            self._password[i] = 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Credentials):
            return NotImplemented
        return self.user_type is other.user_type and self.username == other.username

    def __hash__(self) -> int:
        return hash((self.user_type, self.username))

    def __str__(self) -> str:
        if self.is_public:
            return "Public user"
        return f"User with username '{self.username}'"

    def __repr__(self) -> str:
        return f"Credentials({self.user_type.name}, {self.username!r})"
