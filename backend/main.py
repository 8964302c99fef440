"""ASGI entry point for the billing reconciliation API.

Only verifies session cookies issued elsewhere; signing users up and
logging them in is handled by the main application.
"""
import logging
import math
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from fastapi import Cookie, FastAPI
from fastapi.middleware.cors import CORSMiddleware
import psycopg2
import psycopg2.extras
from pydantic import BaseModel
from dotenv import load_dotenv
from jose import JWTError, jwt

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

from backend.app.billing.exceptions import UnauthorizedError

load_dotenv()


def _connect_timeout_seconds(raw_value: str) -> int:
    try:
        seconds = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if seconds < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    # libpq only accepts whole seconds
    return int(math.ceil(seconds))


def load_db_settings(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    env_mapping = os.environ if env is None else env
    return {
        "host": env_mapping.get("DB_HOST", "127.0.0.1"),
        "port": int(env_mapping.get("DB_PORT", "5432")),
        "dbname": env_mapping.get("DB_NAME", "billing_db"),
        "user": env_mapping.get("DB_USER", "billing_user"),
        "password": env_mapping.get("DB_PASSWORD", "billing_pass"),
        "connect_timeout": _connect_timeout_seconds(env_mapping.get("DB_CONNECT_TIMEOUT", "5")),
    }


DB_SETTINGS = load_db_settings()

SESSION_SECRET = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
SESSION_ALGORITHM = "HS256"
SESSION_TTL_MINUTES = int(os.getenv("JWT_EXP_MINUTES", str(60 * 24 * 7)))
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("auth")


def get_conn():
    return psycopg2.connect(**DB_SETTINGS)


class SessionUser(BaseModel):
    """The authenticated caller; billing code only needs the id and contact details."""

    id: int
    username: str
    email: Optional[str] = None


def create_access_token(*, subject: str, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a session token. Used by tests and local tooling; production tokens come from the main app."""

    lifetime = expires_delta if expires_delta is not None else timedelta(minutes=SESSION_TTL_MINUTES)
    claims = {"sub": subject, "exp": datetime.now(timezone.utc) + lifetime}
    return jwt.encode(claims, SESSION_SECRET, algorithm=SESSION_ALGORITHM)


def decode_session_subject(session_token: str) -> Optional[int]:
    """Return the user id carried by a valid, unexpired token."""

    try:
        claims = jwt.decode(session_token, SESSION_SECRET, algorithms=[SESSION_ALGORITHM])
        return int(claims["sub"])
    except (JWTError, KeyError, TypeError, ValueError):
        return None


def get_user_by_id(uid: int) -> Optional[SessionUser]:
    with get_conn() as conn, conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute("SELECT id, username, email FROM users WHERE id = %s", (uid,))
        row = cur.fetchone()
    return SessionUser(**row) if row else None


def get_current_user(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> SessionUser:
    user_id = decode_session_subject(session_token) if session_token else None
    user = get_user_by_id(user_id) if user_id is not None else None
    if user is None:
        if session_token:
            logger.info("Rejected session cookie that does not resolve to a user")
        raise UnauthorizedError().to_http_exception()
    return user


try:
    from backend import app_context
except ModuleNotFoundError as exc:
    if exc.name != "backend":
        raise
    import app_context  # type: ignore[no-redef]

app_context.configure(get_conn=get_conn, get_current_user=get_current_user)

from backend.app.routes.billing import router as billing_router
from backend.app.routes.plans import router as plans_router
from backend.app.routes.subscriptions import router as subscriptions_router


def create_app() -> FastAPI:
    application = FastAPI(title="Billing Reconciliation API")
    application.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    for router in (plans_router, subscriptions_router, billing_router):
        application.include_router(router)
    return application


app = create_app()
