import hmac
from ipaddress import ip_address

from fastapi import Header, Request, status

from miniapp_notify.auth.context import AdminContext
from miniapp_notify.config import settings
from miniapp_notify.domain.errors import api_error


LOCAL_HOSTS = {"127.0.0.1", "::1", "localhost"}


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def _tokens_match(candidate: str, expected: str) -> bool:
    return hmac.compare_digest(candidate.encode(), expected.encode())


async def require_admin(authorization: str | None = Header(None)) -> AdminContext:
    """Bearer auth against ADMIN_TOKEN for the broadcast and stats endpoints."""
    expected = settings.admin_token or ""
    if not expected:
        raise api_error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "server_misconfigured",
            message="ADMIN_TOKEN is not set",
        )

    token = _extract_bearer_token(authorization)
    if not token:
        raise api_error(
            status.HTTP_401_UNAUTHORIZED,
            "unauthorized",
            message="Missing Authorization: Bearer <token>",
        )
    if not _tokens_match(token, expected):
        raise api_error(status.HTTP_403_FORBIDDEN, "forbidden", message="Invalid token")
    return AdminContext(auth_method="bearer")


def _is_local_peer(host: str | None) -> bool:
    if not host:
        return False
    host = host.removeprefix("::ffff:")
    if host in LOCAL_HOSTS:
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def manager_origins() -> set[str]:
    port = settings.notify_manager_port
    return {
        f"http://{settings.notify_manager_host}:{port}",
        f"http://localhost:{port}",
        f"http://127.0.0.1:{port}",
    }


async def require_local_request(request: Request) -> None:
    host = request.client.host if request.client else None
    if not _is_local_peer(host):
        raise api_error(status.HTTP_403_FORBIDDEN, "Forbidden (local only)")


async def require_same_origin(request: Request) -> None:
    origin = (request.headers.get("origin") or "").strip()
    if not origin:
        return
    if origin not in manager_origins():
        raise api_error(status.HTTP_403_FORBIDDEN, "Forbidden (bad origin)", details={"origin": origin})


async def require_editor_token(
    x_editor_token: str | None = Header(None),
    authorization: str | None = Header(None),
) -> AdminContext:
    """Token check for the manager API: x-editor-token header, or a bearer token."""
    if settings.editor_no_token:
        return AdminContext(auth_method="no_token")
    expected = settings.editor_token or ""
    if not expected:
        raise api_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Missing EDITOR_TOKEN in environment")

    candidate = (x_editor_token or "").strip() or _extract_bearer_token(authorization)
    if not candidate or not _tokens_match(candidate, expected):
        raise api_error(status.HTTP_401_UNAUTHORIZED, "Unauthorized (missing/invalid Session header)")
    return AdminContext(auth_method="editor_token" if x_editor_token else "bearer")
