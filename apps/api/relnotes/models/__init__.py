from __future__ import annotations

from relnotes.models.base import Base as Base  # noqa: F401
from relnotes.models.enums import (  # noqa: F401
    ChangeItemType,
    IntegrationProvider,
    OAuthStateError,
)
from relnotes.models.integrations import Integration  # noqa: F401
from relnotes.models.oauth import OAuthState  # noqa: F401
from relnotes.models.ticket_cache import TicketCache  # noqa: F401
