"""Explicit caller context passed into engine entry points."""

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    OBSERVER = "observer"


class NotAuthorized(Exception):
    """The caller's role does not permit the requested action."""


@dataclass(frozen=True)
class SessionContext:
    role: Role
    user: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


def require_admin(ctx: SessionContext) -> None:
    if not ctx.is_admin:
        raise NotAuthorized(f"{ctx.user or 'anonymous'} is not an administrator")
