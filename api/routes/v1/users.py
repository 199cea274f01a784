"""
api/routes/v1/users.py -- Registration, login, session, and self-service profile endpoints.

Routes:
  POST  /api/v1/users/register          -- public self-registration (patient role only)
  POST  /api/v1/users/login             -- email + password; returns an opaque bearer token
  POST  /api/v1/users/logout            -- revokes the presented session; 204
  GET   /api/v1/users/me                -- own profile                  (profile.read, self)
  PATCH /api/v1/users/me                -- update own name/profile_ref  (profile.update, self)
  POST  /api/v1/users/change-password   -- rotate credential; other sessions revoked
  GET   /api/v1/users/me/notifications  -- own in-app notifications     (profile.read, self)
  GET   /api/v1/users/{user_id}         -- a profile                    (profile.read, self or admin)

Security:
  [H2] POST /login and /register are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] Unknown email and wrong password return the same 401 bad_credentials body.
  [M5] Cache-Control: no-store on responses that carry a token.
  The token is returned once in the login body. It is never set as a cookie
  and never logged.

Every protected route goes through RequestMediator.mediate(); no handler
checks roles itself.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    NotificationResponse,
    ProfileUpdate,
    RegisterRequest,
    UserResponse,
    envelope,
)
from auth.dependencies import get_context, get_mediator, request_source
from auth.mediator import Mutation, RequestContext, RequestMediator, principal_snapshot
from auth.models import Principal
from core.config import get_settings
from core.errors import BadPassword, Forbidden

# Auth policy:
# - POST /users/register, /users/login: public
# - POST /users/logout:                 valid session required (no matrix operation)
# - everything else:                    mediated, operation named per route
router = APIRouter()


def _login_limit() -> str:
    return get_settings().login_rate_limit


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/users/register", status_code=201)
def register(
    request: Request,
    body: RegisterRequest,
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    """Create a patient account. Other roles are created by admins via POST /admin/users."""
    if not mediator.settings.self_registration_enabled:
        raise Forbidden("registration_disabled", "Self-registration is disabled.")
    principal = mediator.service.register(
        body.email,
        body.name,
        body.password,
        source=request_source(request),
    )
    return envelope({"user": UserResponse.from_principal(principal)}, "Registration successful.")


@limiter.limit(_login_limit)  # [H2]
@router.post("/users/login")
def login(
    request: Request,
    body: LoginRequest,
    mediator: RequestMediator = Depends(get_mediator),
) -> JSONResponse:
    """Authenticate with email and password and return a bearer token.

    401 bad_credentials for unknown email and wrong password alike [C1],
    423 locked while the lockout window is open (Retry-After header set),
    403 account_inactive for a correct password on a non-active account.
    """
    principal, session = mediator.login(body.email, body.password, request_source(request))
    payload = LoginResponse(
        user=UserResponse.from_principal(principal),
        access_token=session.token,
        expires_at=session.expires_at,
    )
    resp = JSONResponse(status_code=200, content=envelope(payload, "Login successful."))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.post("/users/logout", status_code=204)
def logout(
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> Response:
    """Revoke the session named by the bearer token."""
    mediator.logout(ctx)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Self-service profile
# ---------------------------------------------------------------------------


@router.get("/users/me")
def me(
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    principal = mediator.mediate(ctx, "profile.read", lambda p: p)
    return envelope({"user": UserResponse.from_principal(principal)})


@router.patch("/users/me")
def update_me(
    body: ProfileUpdate,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    def handler(principal: Principal) -> Mutation:
        before = principal_snapshot(principal)
        updated = mediator.service.update_profile(principal.id, name=body.name, profile_ref=body.profile_ref)
        return Mutation(
            result=updated,
            subject_id=principal.id,
            before=before,
            after=principal_snapshot(updated),
        )

    updated = mediator.mediate(ctx, "profile.update", handler, action="USER.UPDATE")
    return envelope({"user": UserResponse.from_principal(updated)}, "Profile updated.")


@router.post("/users/change-password")
def change_password(
    body: ChangePasswordRequest,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    """Rotate the caller's password. The session used for this call stays valid; all others are revoked.

    The credential service writes the CREDENTIAL.ROTATE audit entry itself.
    """

    def handler(principal: Principal) -> int:
        return mediator.service.rotate_credential(
            principal.id,
            body.current_password,
            body.new_password,
            keep_token=ctx.token,
            source=ctx.source,
        )

    # The caller is authenticated; a wrong current password must not read as a lost session.
    try:
        revoked = mediator.mediate(ctx, "profile.update", handler)
    except BadPassword:
        raise Forbidden("wrong_current_password", "Current password is incorrect.") from None
    return envelope({"revokedSessions": revoked}, "Password changed.")


@router.get("/users/me/notifications")
def my_notifications(
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    notifications = mediator.mediate(ctx, "profile.read", lambda p: mediator.notifier.inbox(p.id))
    return envelope({"notifications": [NotificationResponse.from_notification(n) for n in notifications]})


@router.get("/users/{user_id}")
def get_user(
    user_id: str,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    principal = mediator.mediate(
        ctx,
        "profile.read",
        lambda p: mediator.service.get_principal(user_id),
        target_id=user_id,
    )
    return envelope({"user": UserResponse.from_principal(principal)})
