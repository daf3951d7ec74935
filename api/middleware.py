"""Actor context middleware using ContextVar.

The upstream auth gateway authenticates the caller and forwards who they
are in headers:

- X-Tenant-ID (falls back to the first subdomain, then "default")
- X-User-ID
- X-User-Role (e.g. tenant_admin, super_admin, agent)

Each value is stored in a ContextVar so routers and dependencies can call
get_current_tenant() / get_current_user() / get_current_role() without
threading the request through.
"""

from contextvars import ContextVar

from fastapi import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

ADMIN_ROLES = frozenset({"tenant_admin", "super_admin"})

# ---------------------------------------------------------------------------
# Context variables: task-safe actor state
# ---------------------------------------------------------------------------

_current_tenant: ContextVar[str] = ContextVar("current_tenant", default="default")
_current_user: ContextVar[str | None] = ContextVar("current_user", default=None)
_current_role: ContextVar[str | None] = ContextVar("current_role", default=None)


def get_current_tenant() -> str:
    return _current_tenant.get()


def get_current_user() -> str | None:
    return _current_user.get()


def get_current_role() -> str | None:
    return _current_role.get()


async def require_admin() -> str | None:
    """FastAPI dependency for mutating routes; returns the acting user id."""
    if get_current_role() not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Tenant admin role required")
    return get_current_user()


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

class ActorMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        tenant_id = request.headers.get("X-Tenant-ID")
        if not tenant_id:
            parts = request.headers.get("host", "").split(".")
            if len(parts) > 2:
                tenant_id = parts[0]

        tokens = (
            _current_tenant.set(tenant_id or "default"),
            _current_user.set(request.headers.get("X-User-ID") or None),
            _current_role.set((request.headers.get("X-User-Role") or "").lower() or None),
        )
        try:
            return await call_next(request)
        finally:
            _current_role.reset(tokens[2])
            _current_user.reset(tokens[1])
            _current_tenant.reset(tokens[0])
