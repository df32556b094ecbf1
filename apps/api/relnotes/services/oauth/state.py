from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict, StrictStr, ValidationError, field_validator
from sqlalchemy import delete
from sqlalchemy.orm import Session

from relnotes.core.security import new_random_token
from relnotes.models.enums import IntegrationProvider, OAuthStateError
from relnotes.models.oauth import OAuthState

DEFAULT_STATE_TTL = timedelta(minutes=10)
STATE_TOKEN_BYTES = 32


class OAuthStateRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: StrictStr
    provider: IntegrationProvider
    user_id: StrictStr
    pkce_verifier: StrictStr | None = None
    created_at: datetime | None = None
    expires_at: datetime

    @field_validator("created_at", "expires_at")
    @classmethod
    def _assume_utc(cls, v: datetime | None) -> datetime | None:
        # SQLite hands back naive datetimes even for timezone-aware columns.
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


@dataclass(frozen=True)
class StateConsumed:
    record: OAuthStateRecord

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class StateRejected:
    error: OAuthStateError

    @property
    def ok(self) -> bool:
        return False


ConsumeStateResult = StateConsumed | StateRejected


def create_oauth_state() -> str:
    return new_random_token(nbytes=STATE_TOKEN_BYTES)


def persist_oauth_state(
    *,
    session: Session,
    provider: IntegrationProvider,
    state: str,
    user_id: str,
    pkce_verifier: str | None = None,
    ttl: timedelta = DEFAULT_STATE_TTL,
    now: datetime | None = None,
) -> OAuthState:
    now = now or datetime.now(UTC)
    row = OAuthState(
        state=state,
        provider=provider.value,
        user_id=user_id,
        pkce_verifier=pkce_verifier,
        created_at=now,
        expires_at=now + ttl,
    )
    session.add(row)
    # Flush so a failed insert surfaces before any redirect is issued.
    session.flush()
    return row


def consume_oauth_state(
    *,
    session: Session,
    provider: IntegrationProvider,
    state: str,
    user_id: str,
    now: datetime | None = None,
) -> ConsumeStateResult:
    """Atomically delete and return the state row for (provider, state, user).

    A second callback with the same state finds nothing and gets
    invalid_state. Rows belonging to another user are left untouched and
    reported as invalid_state too.
    """
    now = now or datetime.now(UTC)
    if not state:
        return StateRejected(error=OAuthStateError.invalid_state)

    stmt = (
        delete(OAuthState)
        .where(
            OAuthState.state == state,
            OAuthState.provider == provider.value,
            OAuthState.user_id == user_id,
        )
        .returning(
            OAuthState.state,
            OAuthState.provider,
            OAuthState.user_id,
            OAuthState.pkce_verifier,
            OAuthState.created_at,
            OAuthState.expires_at,
        )
    )
    row = session.execute(stmt).mappings().first()
    if row is None:
        return StateRejected(error=OAuthStateError.invalid_state)

    try:
        record = OAuthStateRecord.model_validate(dict(row))
    except ValidationError:
        return StateRejected(error=OAuthStateError.invalid_state)

    if record.expires_at <= now:
        return StateRejected(error=OAuthStateError.expired_state)

    return StateConsumed(record=record)


def purge_expired_oauth_states(*, session: Session, now: datetime | None = None) -> int:
    now = now or datetime.now(UTC)
    result = session.execute(
        delete(OAuthState)
        .where(OAuthState.expires_at < now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
