"""Process-wide hooks that library modules use instead of importing ``backend.main``."""
from __future__ import annotations

from typing import Any, Callable, Optional

ConnectionFactory = Callable[[], Any]
UserResolver = Callable[..., Any]

_connection_factory: Optional[ConnectionFactory] = None
_user_resolver: Optional[UserResolver] = None


def configure(*, get_conn: ConnectionFactory, get_current_user: UserResolver) -> None:
    """Install the database connection factory and the session user resolver.

    ``backend.main`` calls this once at import time; the billing repository
    opens its connections through :func:`get_conn` afterwards.
    """

    global _connection_factory, _user_resolver
    _connection_factory = get_conn
    _user_resolver = get_current_user


def _registered(hook: Optional[Callable[..., Any]], name: str) -> Callable[..., Any]:
    if hook is None:
        raise RuntimeError(f"{name} was requested before the application context was configured")
    return hook


def get_conn() -> Any:
    """Open a new database connection. The caller owns closing it."""

    return _registered(_connection_factory, "get_conn")()


def get_current_user(*args: Any, **kwargs: Any) -> Any:
    return _registered(_user_resolver, "get_current_user")(*args, **kwargs)
