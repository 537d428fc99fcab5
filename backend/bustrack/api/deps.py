"""Request-scoped dependencies shared by the routers."""

from fastapi import Header

from bustrack.core.session import Role, SessionContext


async def session_context(
    x_role: str | None = Header(default=None),
    x_user: str | None = Header(default=None),
) -> SessionContext:
    """Caller role as asserted by the fronting auth layer. Anything unknown is an observer."""
    try:
        role = Role((x_role or "").strip().lower())
    except ValueError:
        role = Role.OBSERVER
    return SessionContext(role=role, user=x_user or None)
