from __future__ import annotations

import logging
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from relnotes.core.config import get_settings
from relnotes.core.crypto import EncryptionKeyError
from relnotes.core.deps import UserContext, require_rate_limit, require_user
from relnotes.core.http import get_http_client
from relnotes.core.metrics import observe_oauth_callback
from relnotes.db.session import get_session
from relnotes.models.enums import IntegrationProvider
from relnotes.services.integrations import OAuthFlowError, complete_oauth, start_oauth
from relnotes.services.oauth.providers import OAuthProviderConfigError, OAuthTokenExchangeError

logger = logging.getLogger("relnotes.oauth")

router = APIRouter(
    prefix="/auth",
    tags=["oauth"],
    dependencies=[Depends(require_rate_limit("auth"))],
)


def _integrations_redirect(**params: str) -> RedirectResponse:
    settings = get_settings()
    url = f"{settings.FRONTEND_URL.rstrip('/')}/dashboard/integrations?{urlencode(params)}"
    response = RedirectResponse(url, status_code=303)
    response.headers["Cache-Control"] = "no-store"
    return response


def _callback_error(provider: IntegrationProvider, code: str) -> RedirectResponse:
    observe_oauth_callback(provider=provider.value, result=code)
    return _integrations_redirect(error=code)


@router.get("/{provider}")
def authorize(
    provider: IntegrationProvider,
    user: UserContext = Depends(require_user),
    session: Session = Depends(get_session),
) -> RedirectResponse:
    try:
        url = start_oauth(session=session, provider=provider, user_id=user.user_id)
    except OAuthProviderConfigError:
        logger.warning("OAuth authorize requested for unconfigured provider=%s", provider.value)
        return _integrations_redirect(error=f"{provider.value}_not_configured")

    session.commit()
    response = RedirectResponse(url, status_code=303)
    response.headers["Cache-Control"] = "no-store"
    return response


@router.get("/{provider}/callback")
def callback(
    provider: IntegrationProvider,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    user: UserContext = Depends(require_user),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> RedirectResponse:
    if error:
        logger.info("OAuth provider=%s returned error=%s", provider.value, error)
        return _callback_error(provider, "oauth_denied")
    if not code or not state:
        return _callback_error(provider, "invalid_callback")

    try:
        integration = complete_oauth(
            session=session,
            http_client=http_client,
            provider=provider,
            user_id=user.user_id,
            organization_id=user.organization_id,
            state=state,
            code=code,
        )
        session.commit()
    except OAuthFlowError as e:
        logger.info("OAuth callback rejected provider=%s code=%s", provider.value, e.code)
        return _callback_error(provider, e.code)
    except OAuthProviderConfigError:
        session.rollback()
        logger.error("OAuth callback for unconfigured provider=%s", provider.value)
        return _callback_error(provider, f"{provider.value}_not_configured")
    except OAuthTokenExchangeError as e:
        session.rollback()
        logger.warning(
            "OAuth token exchange failed provider=%s status=%s", provider.value, e.status_code
        )
        return _callback_error(provider, "token_exchange_failed")
    except EncryptionKeyError:
        session.rollback()
        logger.error("INTEGRATIONS_ENCRYPTION_KEY is not usable; provider=%s", provider.value)
        return _callback_error(provider, "encryption_not_configured")
    except Exception:
        session.rollback()
        logger.exception("OAuth callback failed provider=%s", provider.value)
        return _callback_error(provider, "callback_failed")

    logger.info(
        "OAuth connected provider=%s organization=%s integration=%s",
        provider.value,
        user.organization_id,
        integration.id,
    )
    observe_oauth_callback(provider=provider.value, result="connected")
    return _integrations_redirect(success=f"{provider.value}_connected")
