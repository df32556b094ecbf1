from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import httpx
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from relnotes.core.config import get_settings
from relnotes.core.crypto import (
    EncryptionKeyError,
    encrypt_credentials,
    ensure_encryption_key,
    get_access_token_from_encrypted_credentials,
)
from relnotes.core.security import create_pkce_pair
from relnotes.db.session import dialect_insert
from relnotes.models.enums import IntegrationProvider
from relnotes.models.integrations import Integration
from relnotes.services.oauth.providers import (
    PROVIDERS,
    OAuthTokenResponse,
    build_authorization_url,
    exchange_code_for_tokens,
    get_client_config,
)
from relnotes.services.oauth.state import (
    consume_oauth_state,
    create_oauth_state,
    persist_oauth_state,
    purge_expired_oauth_states,
)
from relnotes.services.provider_api import ProviderApiError, ProviderIdentity, fetch_provider_identity

logger = logging.getLogger("relnotes.integrations")


class OAuthFlowError(RuntimeError):
    """Recoverable callback failure carrying a short machine-readable code."""

    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


class IntegrationNotFoundError(LookupError):
    pass


class CredentialUnavailableError(RuntimeError):
    pass


@dataclass(frozen=True)
class IntegrationStatus:
    provider: IntegrationProvider
    connected: bool
    credentials_usable: bool
    external_id: str | None
    updated_at: datetime | None
    last_sync: datetime | None = None


def start_oauth(
    *,
    session: Session,
    provider: IntegrationProvider,
    user_id: str,
    now: datetime | None = None,
) -> str:
    settings = get_settings()
    client_config = get_client_config(settings, provider)
    now = now or datetime.now(UTC)

    state = create_oauth_state()
    pkce = create_pkce_pair() if PROVIDERS[provider].uses_pkce else None

    purge_expired_oauth_states(session=session, now=now)
    persist_oauth_state(
        session=session,
        provider=provider,
        state=state,
        user_id=user_id,
        pkce_verifier=pkce.verifier if pkce else None,
        ttl=timedelta(seconds=settings.OAUTH_STATE_TTL_SECONDS),
        now=now,
    )

    return build_authorization_url(
        provider=provider,
        client_id=client_config.client_id,
        redirect_uri=client_config.redirect_uri,
        state=state,
        code_challenge=pkce.challenge if pkce else None,
        code_challenge_method=pkce.method if pkce else "S256",
    )


def complete_oauth(
    *,
    session: Session,
    http_client: httpx.Client,
    provider: IntegrationProvider,
    user_id: str,
    organization_id: str,
    state: str,
    code: str,
    now: datetime | None = None,
) -> Integration:
    settings = get_settings()
    now = now or datetime.now(UTC)

    result = consume_oauth_state(
        session=session,
        provider=provider,
        state=state,
        user_id=user_id,
        now=now,
    )
    # The state row is gone for good, whatever happens next.
    session.commit()
    if not result.ok:
        raise OAuthFlowError(result.error.value)

    client_config = get_client_config(settings, provider, require_secret=True)
    ensure_encryption_key()
    token = exchange_code_for_tokens(
        http_client,
        provider=provider,
        code=code,
        client_config=client_config,
        code_verifier=result.record.pkce_verifier,
    )
    identity = lookup_provider_identity(
        http_client, provider=provider, access_token=token.access_token
    )

    return save_integration_credentials(
        session=session,
        organization_id=organization_id,
        provider=provider,
        token=token,
        identity=identity,
        now=now,
    )


def lookup_provider_identity(
    http_client: httpx.Client,
    *,
    provider: IntegrationProvider,
    access_token: str,
) -> ProviderIdentity | None:
    """Best-effort account lookup; a failure never blocks connecting."""
    try:
        return fetch_provider_identity(http_client, provider=provider, access_token=access_token)
    except ProviderApiError as e:
        logger.warning(
            "Identity lookup failed provider=%s status=%s: %s", provider.value, e.status_code, e
        )
        return None


def save_integration_credentials(
    *,
    session: Session,
    organization_id: str,
    provider: IntegrationProvider,
    token: OAuthTokenResponse,
    identity: ProviderIdentity | None = None,
    now: datetime | None = None,
) -> Integration:
    """Upsert the organization's integration for this provider.

    A single INSERT .. ON CONFLICT (organization_id, type) so concurrent first
    connects both land on the same row. An unknown identity keeps the stored
    external_id.
    """
    now = now or datetime.now(UTC)
    expires_at = now + timedelta(seconds=token.expires_in) if token.expires_in else None

    envelope = encrypt_credentials(
        {
            "access_token": token.access_token,
            "refresh_token": token.refresh_token,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "scope": token.scope,
            "token_type": token.token_type,
        }
    )

    config = {
        **(identity.config if identity else {}),
        "scopes": token.scopes,
        "token_type": token.token_type,
    }

    table = Integration.__table__
    stmt = dialect_insert(session, table).values(
        organization_id=organization_id,
        type=provider.value,
        external_id=identity.external_id if identity else None,
        encrypted_credentials=envelope.model_dump(),
        config=config,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["organization_id", "type"],
        set_={
            "external_id": func.coalesce(stmt.excluded.external_id, table.c.external_id),
            "encrypted_credentials": stmt.excluded.encrypted_credentials,
            "config": stmt.excluded.config,
            "is_active": True,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    session.execute(stmt)

    integration = (
        session.execute(
            select(Integration)
            .where(
                Integration.organization_id == organization_id,
                Integration.type == provider.value,
            )
            .execution_options(populate_existing=True)
        )
        .scalars()
        .one()
    )

    logger.info(
        "Stored %s credentials for organization=%s integration=%s",
        provider.value,
        organization_id,
        integration.id,
    )
    return integration


def get_integration(
    *,
    session: Session,
    organization_id: str,
    provider: IntegrationProvider,
) -> Integration:
    integration = (
        session.execute(
            select(Integration).where(
                Integration.organization_id == organization_id,
                Integration.type == provider.value,
                Integration.is_active.is_(True),
            )
        )
        .scalars()
        .first()
    )
    if integration is None:
        raise IntegrationNotFoundError(f"{provider.value} integration not found")
    return integration


def get_integration_access_token(
    *,
    session: Session,
    organization_id: str,
    provider: IntegrationProvider,
) -> str:
    integration = get_integration(session=session, organization_id=organization_id, provider=provider)
    token = get_access_token_from_encrypted_credentials(integration.encrypted_credentials)
    if token is None:
        logger.warning(
            "Unusable %s credentials for organization=%s integration=%s",
            provider.value,
            organization_id,
            integration.id,
        )
        raise CredentialUnavailableError(f"{provider.value} credentials are unusable")
    return token


def mark_integration_synced(
    *,
    session: Session,
    organization_id: str,
    provider: IntegrationProvider,
    now: datetime | None = None,
) -> None:
    session.execute(
        update(Integration)
        .where(
            Integration.organization_id == organization_id,
            Integration.type == provider.value,
        )
        .values(last_sync=now or datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )


def list_integration_statuses(*, session: Session, organization_id: str) -> list[IntegrationStatus]:
    rows = (
        session.execute(select(Integration).where(Integration.organization_id == organization_id))
        .scalars()
        .all()
    )
    by_type = {row.type: row for row in rows}

    out: list[IntegrationStatus] = []
    for provider in IntegrationProvider:
        row = by_type.get(provider.value)
        connected = row is not None and row.is_active
        usable = False
        if connected:
            try:
                usable = get_access_token_from_encrypted_credentials(row.encrypted_credentials) is not None
            except EncryptionKeyError:
                logger.error("INTEGRATIONS_ENCRYPTION_KEY is not usable; cannot verify credentials")
        out.append(
            IntegrationStatus(
                provider=provider,
                connected=connected,
                credentials_usable=usable,
                external_id=row.external_id if row is not None else None,
                updated_at=row.updated_at if row is not None else None,
                last_sync=row.last_sync if row is not None else None,
            )
        )
    return out


def disconnect_integration(
    *,
    session: Session,
    organization_id: str,
    provider: IntegrationProvider,
) -> bool:
    result = session.execute(
        delete(Integration)
        .where(
            Integration.organization_id == organization_id,
            Integration.type == provider.value,
        )
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)
