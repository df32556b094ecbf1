from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import urlencode

import httpx

from relnotes.core.config import Settings
from relnotes.models.enums import IntegrationProvider


class OAuthProviderConfigError(RuntimeError):
    def __init__(self, provider: IntegrationProvider, message: str) -> None:
        super().__init__(message)
        self.provider = provider


class OAuthTokenExchangeError(RuntimeError):
    def __init__(self, provider: IntegrationProvider, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


@dataclass(frozen=True)
class ProviderSpec:
    provider: IntegrationProvider
    authorize_url: str
    token_url: str
    scopes: tuple[str, ...]
    scope_separator: str = " "
    uses_pkce: bool = True
    extra_authorize_params: dict[str, str] = field(default_factory=dict)


PROVIDERS: dict[IntegrationProvider, ProviderSpec] = {
    IntegrationProvider.github: ProviderSpec(
        provider=IntegrationProvider.github,
        authorize_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        scopes=("repo", "user:email", "read:user", "read:org"),
        scope_separator=",",
    ),
    IntegrationProvider.jira: ProviderSpec(
        provider=IntegrationProvider.jira,
        authorize_url="https://auth.atlassian.com/authorize",
        token_url="https://auth.atlassian.com/oauth/token",
        scopes=("read:jira-work", "read:jira-user", "read:jira-project", "offline_access"),
        extra_authorize_params={"audience": "api.atlassian.com", "prompt": "consent"},
    ),
    IntegrationProvider.linear: ProviderSpec(
        provider=IntegrationProvider.linear,
        authorize_url="https://linear.app/oauth/authorize",
        token_url="https://api.linear.app/oauth/token",
        scopes=("read",),
        extra_authorize_params={"prompt": "consent"},
    ),
}


@dataclass(frozen=True)
class OAuthClientConfig:
    client_id: str
    client_secret: str | None
    redirect_uri: str


@dataclass(frozen=True)
class OAuthTokenResponse:
    access_token: str
    refresh_token: str | None
    expires_in: int | None
    scope: str | None
    token_type: str | None

    @property
    def scopes(self) -> list[str]:
        if not self.scope:
            return []
        # GitHub joins with commas, everyone else with spaces.
        return [s for s in self.scope.replace(",", " ").split(" ") if s]


def get_client_config(
    settings: Settings,
    provider: IntegrationProvider,
    *,
    require_secret: bool = False,
) -> OAuthClientConfig:
    prefix = provider.value.upper()
    client_id = getattr(settings, f"{prefix}_CLIENT_ID")
    client_secret = getattr(settings, f"{prefix}_CLIENT_SECRET")
    redirect_uri = getattr(settings, f"{prefix}_REDIRECT_URL") or (
        f"{settings.API_BASE_URL.rstrip('/')}/auth/{provider.value}/callback"
    )

    if not client_id or (require_secret and not client_secret):
        raise OAuthProviderConfigError(
            provider, f"{prefix} OAuth is not configured on this server."
        )
    return OAuthClientConfig(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
    )


def build_authorization_url(
    *,
    provider: IntegrationProvider,
    client_id: str,
    redirect_uri: str,
    state: str,
    code_challenge: str | None = None,
    code_challenge_method: str = "S256",
) -> str:
    spec = PROVIDERS[provider]
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": spec.scope_separator.join(spec.scopes),
        "response_type": "code",
        "state": state,
        **spec.extra_authorize_params,
    }
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = code_challenge_method
    return f"{spec.authorize_url}?{urlencode(params)}"


def exchange_code_for_tokens(
    client: httpx.Client,
    *,
    provider: IntegrationProvider,
    code: str,
    client_config: OAuthClientConfig,
    code_verifier: str | None = None,
) -> OAuthTokenResponse:
    spec = PROVIDERS[provider]
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": client_config.client_id,
        "client_secret": client_config.client_secret or "",
        "redirect_uri": client_config.redirect_uri,
    }
    if code_verifier:
        form["code_verifier"] = code_verifier

    try:
        res = client.post(
            spec.token_url,
            data=form,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/x-www-form-urlencoded",
            },
        )
    except httpx.HTTPError as e:
        raise OAuthTokenExchangeError(provider, f"{provider.value} token request failed") from e

    if res.status_code >= 400:
        # The upstream body is never surfaced.
        raise OAuthTokenExchangeError(
            provider,
            f"{provider.value} token exchange failed",
            status_code=res.status_code,
        )

    try:
        payload = res.json()
    except ValueError as e:
        raise OAuthTokenExchangeError(provider, f"{provider.value} token response is not JSON") from e

    # GitHub reports errors with a 200 and an `error` field.
    access_token = payload.get("access_token") if isinstance(payload, dict) else None
    if not isinstance(access_token, str) or not access_token:
        raise OAuthTokenExchangeError(
            provider,
            f"{provider.value} token response is missing access_token",
            status_code=res.status_code,
        )

    return OAuthTokenResponse(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or None,
        expires_in=_optional_int(payload.get("expires_in")),
        scope=payload.get("scope") or None,
        token_type=payload.get("token_type") or None,
    )


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
