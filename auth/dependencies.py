"""
auth/dependencies.py -- FastAPI Depends() helpers that build a RequestContext.

One auth method: Authorization: Bearer <token>. The token is opaque; nothing
here parses it. Token validation is the mediator's job, not this module's --
these helpers only collect what the transport knows about the caller:

  token     -- from the Authorization header, or None
  source    -- client IP and User-Agent, recorded on sessions and audit entries
  deadline  -- REQUEST_TIMEOUT_SECONDS, or a smaller client value from the
               X-Request-Timeout header (seconds, float). Larger or malformed
               client values are ignored.

get_mediator() returns the RequestMediator wired up in the app lifespan.

Layer rule: may import fastapi (part of the DI system); no imports from api/
or clinic/.
"""

from __future__ import annotations

from fastapi import Request

from auth.mediator import RequestContext, RequestMediator
from auth.models import Source
from core.deadline import Deadline

_TIMEOUT_HEADER = "X-Request-Timeout"


def bearer_token(request: Request) -> str | None:
    """Return the raw bearer token, or None if the header is absent or not Bearer."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def request_source(request: Request) -> Source:
    return Source(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


def request_deadline(request: Request) -> Deadline:
    seconds = request.app.state.settings.request_timeout_seconds
    raw = request.headers.get(_TIMEOUT_HEADER)
    if raw:
        try:
            requested = float(raw)
        except ValueError:
            requested = None
        if requested is not None and 0 < requested < seconds:
            seconds = requested
    return Deadline(seconds)


def get_context(request: Request) -> RequestContext:
    """Use as a FastAPI dependency:

    @router.get("/protected")
    def route(ctx: RequestContext = Depends(get_context)): ...
    """
    return RequestContext(
        token=bearer_token(request),
        source=request_source(request),
        deadline=request_deadline(request),
    )


def get_mediator(request: Request) -> RequestMediator:
    return request.app.state.mediator
