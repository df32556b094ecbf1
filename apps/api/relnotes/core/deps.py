from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from fastapi import HTTPException, Request, status

from relnotes.core.config import get_settings
from relnotes.core.metrics import observe_rate_limited
from relnotes.core.middleware import RateLimiter, now_ts
from relnotes.core.security import verify_session_token

SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


@dataclass(frozen=True)
class UserContext:
    user_id: str
    organization_id: str


def require_csrf_header(request: Request) -> None:
    if request.method in SAFE_METHODS:
        return

    settings = get_settings()
    cookie_token = request.cookies.get(settings.CSRF_COOKIE_NAME)
    header_token = request.headers.get(settings.CSRF_HEADER_NAME)

    if not cookie_token or not header_token or cookie_token != header_token:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="CSRF token missing or invalid",
        )


def get_current_user(request: Request) -> UserContext | None:
    settings = get_settings()
    raw = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not raw:
        return None

    verified = verify_session_token(raw)
    if verified is None:
        return None
    user_id, organization_id = verified
    return UserContext(user_id=user_id, organization_id=organization_id)


def require_user(request: Request) -> UserContext:
    user = get_current_user(request)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


def require_rate_limit(policy: str) -> Callable[[Request], None]:
    def _dep(request: Request) -> None:
        limiters: dict[str, RateLimiter] = getattr(request.app.state, "rate_limiters", {})
        limiter = limiters.get(policy)
        if limiter is None:
            return
        if not limiter.check(request, now_ts=now_ts()):
            request.state.rate_limited = True
            observe_rate_limited(policy=policy)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
            )

    return _dep
