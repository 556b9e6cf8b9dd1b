from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from warden.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MeResponse,
    PermissionCreateRequest,
    PermissionResponse,
    PermissionUpdateRequest,
    RegisterRequest,
    RoleAssignRequest,
    RoleBulkDeleteRequest,
    RoleCreateRequest,
    RoleDetailResponse,
    RoleGrantRequest,
    RolePermissionsSyncRequest,
    RoleResponse,
    RoleUpdateRequest,
    SessionTokenRequest,
    UserDetailResponse,
    UserResponse,
    UserRolesSyncRequest,
    UserUpdateRequest,
)
from warden.config import Settings, get_settings
from warden.logging import get_logger, hash_email
from warden.service.errors import AuthenticationError, RateLimitedError, TokenInvalidError
from warden.service.runtime import check_rate_limit, get_runtime
from warden.storage.models import AccessClaims, Permission, Role, TokenPair, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
# Refresh cookie is only ever sent to the session endpoints
REFRESH_COOKIE_PATH = "/v1/auth/session"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, cost: int = 1
) -> int:
    """Raise 429 when the bucket for ``key`` is exhausted; return tokens left."""
    allowed, remaining, retry_after = await check_rate_limit(
        runtime, key, limit, window_seconds, cost=cost
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", bucket=key.split(":", 1)[0], retry_after=retry_after)
        raise RateLimitedError("too many attempts, try again later", detail={"retry_after": retry_after})
    return remaining


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AccessClaims:
    """Verify the access token from the cookie, falling back to the bearer header."""
    token = request.cookies.get(ACCESS_COOKIE) or _extract_bearer(authorization)
    if not token:
        raise TokenInvalidError("authentication required")
    return await get_runtime().auth.verify_access_token(token)


def require_permission(permission: str):
    """Dependency factory gating a route on one aggregated permission."""

    async def _dependency(claims: AccessClaims = Depends(get_principal)) -> AccessClaims:
        runtime = get_runtime()
        await runtime.auth.get_current_user(claims)
        await runtime.access.require_permission(claims.principal_id, permission)
        return claims

    return _dependency


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        status=user.status.value,
        created_at=user.created_at,
    )


def _role_response(role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id, name=role.name, description=role.description, created_at=role.created_at
    )


def _permission_response(permission: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=permission.id, name=permission.name, description=permission.description
    )


def _role_detail_response(role: Role, permissions: List[Permission]) -> RoleDetailResponse:
    return RoleDetailResponse(
        **_role_response(role).model_dump(),
        permissions=[_permission_response(p) for p in permissions],
    )


def _user_detail_response(user: User, roles: List[Role]) -> UserDetailResponse:
    return UserDetailResponse(
        **_user_response(user).model_dump(),
        roles=[_role_response(role) for role in roles],
    )


def _auth_response(tokens: TokenPair, user: Optional[User] = None) -> AuthResponse:
    return AuthResponse(
        user=_user_response(user) if user else None,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _apply_session_cookies(response: Response, tokens: TokenPair, settings: Settings) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        ACCESS_COOKIE, path="/", secure=settings.cookie_secure, httponly=True, samesite="strict"
    )
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _presented_refresh_token(request: Request, body: Optional[SessionTokenRequest]) -> Optional[str]:
    if body is not None and body.refresh_token:
        return body.refresh_token
    return request.cookies.get(REFRESH_COOKIE)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a principal and sign it in on its first device.

    Raises:
        403: If registration is disabled
        409: If the email is already registered
        429: If too many registrations came from this client
    """
    settings = get_settings()
    if not settings.allow_signup:
        raise _http_error("forbidden", "registration disabled", status_code=403)
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        settings.register_rate_limit,
        settings.register_rate_limit_window_seconds,
    )
    result = await runtime.auth.register(body.email, body.password, body.name)
    _apply_session_cookies(response, result.tokens, settings)
    return Envelope(status="ok", data=_auth_response(result.tokens, result.user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Only failed attempts count against the per-email limit.

    Raises:
        401: If the credentials are invalid
        429: If too many failed attempts were made for this email
    """
    settings = get_settings()
    runtime = get_runtime()
    key = f"login:{body.email}"
    limit = settings.login_rate_limit
    window = settings.login_rate_limit_window_seconds
    await _enforce_rate_limit(runtime, key, limit, window, cost=0)
    try:
        result = await runtime.auth.login(body.email, body.password)
    except AuthenticationError:
        _, remaining, _ = await check_rate_limit(runtime, key, limit, window, cost=1)
        if remaining == 0:
            logger.warning("login_lockout_reached", email_hash=hash_email(body.email))
        raise
    _apply_session_cookies(response, result.tokens, settings)
    return Envelope(status="ok", data=_auth_response(result.tokens, result.user))


@router.post("/auth/session/refresh", response_model=Envelope, tags=["auth"])
async def refresh_session(
    request: Request,
    response: Response,
    body: Optional[SessionTokenRequest] = None,
):
    """Exchange a live refresh token for a new token pair.

    The presented token is consumed; replaying it fails with 401.
    """
    settings = get_settings()
    token = _presented_refresh_token(request, body)
    if not token:
        raise TokenInvalidError("refresh token required")
    tokens = await get_runtime().auth.refresh(token)
    _apply_session_cookies(response, tokens, settings)
    return Envelope(status="ok", data=_auth_response(tokens))


@router.post("/auth/session/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[SessionTokenRequest] = None,
):
    settings = get_settings()
    token = _presented_refresh_token(request, body)
    if token:
        await get_runtime().auth.logout(token)
    _clear_session_cookies(response, settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(claims: AccessClaims = Depends(get_principal)):
    runtime = get_runtime()
    user = await runtime.auth.get_current_user(claims)
    permissions = await runtime.access.get_effective_permissions(user.id)
    return Envelope(
        status="ok",
        data=MeResponse(user=_user_response(user), permissions=sorted(permissions)),
    )



@router.get("/roles", response_model=Envelope, tags=["access"])
async def list_roles(_: AccessClaims = Depends(require_permission("roles:view"))):
    roles = await get_runtime().access.list_roles()
    return Envelope(status="ok", data=[_role_response(role) for role in roles])


@router.post("/roles", response_model=Envelope, status_code=201, tags=["access"])
async def create_role(
    body: RoleCreateRequest,
    _: AccessClaims = Depends(require_permission("roles:create")),
):
    role = await get_runtime().access.create_role(body.name, body.description)
    return Envelope(status="ok", data=_role_response(role))


# Declared before /roles/{role_id} so "bulk" is never read as an id
@router.delete("/roles/bulk", response_model=Envelope, tags=["access"])
async def delete_roles(
    body: RoleBulkDeleteRequest,
    _: AccessClaims = Depends(require_permission("roles:delete")),
):
    deleted = await get_runtime().access.delete_roles(body.ids)
    return Envelope(status="ok", data={"deleted": deleted})


@router.get("/roles/{role_id}", response_model=Envelope, tags=["access"])
async def get_role(
    role_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("roles:view")),
):
    access = get_runtime().access
    role = await access.get_role(role_id)
    permissions = await access.list_role_permissions(role_id)
    return Envelope(status="ok", data=_role_detail_response(role, permissions))


@router.put("/roles/{role_id}", response_model=Envelope, tags=["access"])
async def update_role(
    body: RoleUpdateRequest,
    role_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("roles:edit")),
):
    role = await get_runtime().access.update_role(
        role_id, name=body.name, description=body.description
    )
    return Envelope(status="ok", data=_role_response(role))


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["access"])
async def delete_role(
    role_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("roles:delete")),
):
    """Delete a role; principals holding it lose its permissions immediately."""
    await get_runtime().access.delete_role(role_id)
    return Envelope(status="ok", data={"role_id": role_id})


@router.get("/roles/{role_id}/permissions", response_model=Envelope, tags=["access"])
async def list_role_permissions(
    role_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("roles:view")),
):
    permissions = await get_runtime().access.list_role_permissions(role_id)
    return Envelope(status="ok", data=[_permission_response(p) for p in permissions])


@router.post("/roles/{role_id}/permissions", response_model=Envelope, tags=["access"])
async def grant_role_permission(
    body: RoleGrantRequest,
    role_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("roles:edit")),
):
    await get_runtime().access.grant_permission(role_id, body.permission_id)
    return Envelope(status="ok", data={"role_id": role_id, "permission_id": body.permission_id})


@router.patch("/roles/{role_id}/permissions", response_model=Envelope, tags=["access"])
async def sync_role_permissions(
    body: RolePermissionsSyncRequest,
    role_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("roles:edit")),
):
    """Replace the role's grants with exactly the listed permissions.

    Raises:
        404: If the role or any listed permission does not exist
    """
    permissions = await get_runtime().access.sync_role_permissions(role_id, body.permission_ids)
    return Envelope(status="ok", data=[_permission_response(p) for p in permissions])


@router.get("/permissions", response_model=Envelope, tags=["access"])
async def list_permissions(_: AccessClaims = Depends(require_permission("permissions:view"))):
    permissions = await get_runtime().access.list_permissions()
    return Envelope(status="ok", data=[_permission_response(p) for p in permissions])


@router.post("/permissions", response_model=Envelope, status_code=201, tags=["access"])
async def create_permission(
    body: PermissionCreateRequest,
    _: AccessClaims = Depends(require_permission("permissions:create")),
):
    permission = await get_runtime().access.create_permission(body.name, body.description)
    return Envelope(status="ok", data=_permission_response(permission))


@router.get("/permissions/{permission_id}", response_model=Envelope, tags=["access"])
async def get_permission(
    permission_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("permissions:view")),
):
    permission = await get_runtime().access.get_permission(permission_id)
    return Envelope(status="ok", data=_permission_response(permission))


@router.put("/permissions/{permission_id}", response_model=Envelope, tags=["access"])
async def update_permission(
    body: PermissionUpdateRequest,
    permission_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("permissions:edit")),
):
    permission = await get_runtime().access.update_permission(
        permission_id, name=body.name, description=body.description
    )
    return Envelope(status="ok", data=_permission_response(permission))


@router.delete("/permissions/{permission_id}", response_model=Envelope, tags=["access"])
async def delete_permission(
    permission_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("permissions:delete")),
):
    await get_runtime().access.delete_permission(permission_id)
    return Envelope(status="ok", data={"permission_id": permission_id})


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(_: AccessClaims = Depends(require_permission("users:view"))):
    users = await get_runtime().auth.list_users()
    return Envelope(status="ok", data=[_user_response(user) for user in users])


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    user_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("users:view")),
):
    runtime = get_runtime()
    user = await runtime.auth.get_user(user_id)
    roles = await runtime.access.list_user_roles(user_id)
    return Envelope(status="ok", data=_user_detail_response(user, roles))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UserUpdateRequest,
    user_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("users:edit")),
):
    """Update a principal's profile, password or roles.

    A new password revokes all of the principal's refresh sessions.
    ``role_ids``, when present, replaces the principal's roles.

    Raises:
        404: If the principal or a listed role does not exist
        409: If the new email is already registered
    """
    runtime = get_runtime()
    user = await runtime.auth.update_user(
        user_id, name=body.name, email=body.email, password=body.password
    )
    if body.role_ids is not None:
        roles = await runtime.access.sync_user_roles(user_id, body.role_ids)
    else:
        roles = await runtime.access.list_user_roles(user_id)
    return Envelope(status="ok", data=_user_detail_response(user, roles))


@router.post("/users/{user_id}/roles", response_model=Envelope, tags=["users"])
async def assign_user_role(
    body: RoleAssignRequest,
    user_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("users:edit")),
):
    await get_runtime().access.assign_role(user_id, body.role_id)
    return Envelope(status="ok", data={"user_id": user_id, "role_id": body.role_id})


@router.patch("/users/{user_id}/roles", response_model=Envelope, tags=["users"])
async def sync_user_roles(
    body: UserRolesSyncRequest,
    user_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("users:edit")),
):
    """Replace the principal's roles with exactly the listed ones."""
    roles = await get_runtime().access.sync_user_roles(user_id, body.role_ids)
    return Envelope(status="ok", data=[_role_response(role) for role in roles])


@router.delete("/users/{user_id}/roles/{role_id}", response_model=Envelope, tags=["users"])
async def revoke_user_role(
    user_id: str = Path(..., max_length=64),
    role_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("users:edit")),
):
    await get_runtime().access.revoke_role(user_id, role_id)
    return Envelope(status="ok", data={"user_id": user_id, "role_id": role_id})


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def deactivate_user(
    user_id: str = Path(..., max_length=64),
    _: AccessClaims = Depends(require_permission("users:delete")),
):
    """Deactivate a principal; its refresh sessions are revoked with it."""
    user = await get_runtime().auth.deactivate_user(user_id)
    return Envelope(status="ok", data=_user_response(user))
