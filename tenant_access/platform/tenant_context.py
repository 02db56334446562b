"""
Tenant context for API requests.

Authentication happens upstream: the auth gateway verifies the session and
forwards the caller's identity in trusted headers. This middleware turns
those headers into an immutable TenantContext on request.state.

SECURITY:
- tenant_id comes from the gateway headers, NEVER from request body/query
- requests to /api/ without a tenant context are rejected with 403
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from tenant_access.constants.permissions import Role

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-Id"
USER_HEADER = "X-User-Id"
ROLE_HEADER = "X-User-Role"

PUBLIC_PATHS = {"/", "/health", "/docs", "/redoc", "/openapi.json"}


class TenantContext:
    """Identity of the caller for the current request."""

    def __init__(self, tenant_id: str, user_id: str, role: Optional[Role]):
        if not tenant_id:
            raise ValueError("tenant_id cannot be empty")
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.role = role

    @property
    def is_platform_admin(self) -> bool:
        return self.role == Role.PLATFORM_ADMIN

    def __repr__(self) -> str:
        role = self.role.value if self.role else None
        return f"<TenantContext(tenant_id={self.tenant_id}, user_id={self.user_id}, role={role})>"


class TenantContextMiddleware:
    """
    HTTP middleware that attaches TenantContext to request.state.

    An unknown role header still yields a context (with role=None); the
    permission resolver denies unknown roles.
    """

    async def __call__(self, request: Request, call_next):
        path = request.url.path
        if path in PUBLIC_PATHS or not path.startswith("/api/"):
            return await call_next(request)

        tenant_id = (request.headers.get(TENANT_HEADER) or "").strip()
        if not tenant_id:
            logger.warning(
                "Request missing tenant context",
                extra={"path": path, "method": request.method},
            )
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"detail": "Tenant context not available"},
            )

        raw_role = request.headers.get(ROLE_HEADER)
        role = Role.parse(raw_role)
        if raw_role and role is None:
            logger.warning(
                "Unrecognised role header",
                extra={"path": path, "tenant_id": tenant_id, "role": raw_role},
            )

        request.state.tenant_context = TenantContext(
            tenant_id=tenant_id,
            user_id=(request.headers.get(USER_HEADER) or "").strip(),
            role=role,
        )
        return await call_next(request)


def get_tenant_context(request: Request) -> TenantContext:
    """Return the caller's TenantContext, or raise 403 when the middleware did not set one."""
    ctx = getattr(request.state, "tenant_context", None)
    if ctx is None:
        logger.error("Tenant context missing on request", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant context not available",
        )
    return ctx
