import secrets
import base64

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi.security.utils import get_authorization_scheme_param

from paywall.core.settings import settings


security = HTTPBasic(auto_error=False)

# Reachable without the site-wide gate: health probes and provider callbacks.
PUBLIC_PATHS = ("/health",)
PUBLIC_PATH_PREFIXES = ("/api/webhook/",)


def _credentials_match(username: str, password: str, expected_username: str, expected_password: str) -> bool:
    username_ok = secrets.compare_digest(username.encode("utf-8"), expected_username.encode("utf-8"))
    password_ok = secrets.compare_digest(password.encode("utf-8"), expected_password.encode("utf-8"))
    return username_ok and password_ok


def is_public_path(path: str) -> bool:
    if path in PUBLIC_PATHS:
        return True
    return any(path.startswith(p) for p in PUBLIC_PATH_PREFIXES)


def enforce_basic_auth_for_request(request: Request) -> None:
    if not settings.basic_auth_enabled:
        return

    if settings.basic_auth_username is None or settings.basic_auth_password is None:
        raise RuntimeError("Basic Auth enabled but credentials are not set")

    auth_header = request.headers.get("authorization")
    scheme, param = get_authorization_scheme_param(auth_header)
    if scheme.lower() != "basic" or not param:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Basic"},
        )

    try:
        decoded = base64.b64decode(param).decode("utf-8")
    except Exception:
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )

    if ":" not in decoded:
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )

    username, password = decoded.split(":", 1)
    if not _credentials_match(username, password, settings.basic_auth_username, settings.basic_auth_password):
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )


def require_admin(credentials: HTTPBasicCredentials | None = Depends(security)) -> str:
    if settings.admin_username is None or settings.admin_password is None:
        raise HTTPException(status_code=503, detail="Admin credentials are not configured")

    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Basic"},
        )

    if not _credentials_match(
        credentials.username,
        credentials.password,
        settings.admin_username,
        settings.admin_password,
    ):
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def require_cron_secret(request: Request) -> None:
    if not settings.cron_secret:
        return
    scheme, param = get_authorization_scheme_param(request.headers.get("authorization"))
    if scheme.lower() != "bearer" or not secrets.compare_digest(param.encode("utf-8"), settings.cron_secret.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")
