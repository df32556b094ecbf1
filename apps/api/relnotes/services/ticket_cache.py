from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from relnotes.core.metrics import observe_ticket_cache_write
from relnotes.db.session import dialect_insert
from relnotes.models.ticket_cache import TicketCache
from relnotes.services.change_items import ChangeItem

logger = logging.getLogger("relnotes.ticket_cache")

CONFLICT_COLUMNS = ("organization_id", "integration_type", "ticket_id")


def change_item_to_ticket_id(item: ChangeItem) -> str:
    return item.external_id


def change_item_to_ticket_cache_row(
    organization_id: str,
    item: ChangeItem,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or datetime.now(UTC)

    metadata: dict[str, Any] = {"type": item.type.value}
    if item.labels:
        metadata["labels"] = list(item.labels)
    if item.raw:
        metadata["raw"] = item.raw

    return {
        "organization_id": organization_id,
        "integration_type": item.provider.value,
        "ticket_id": change_item_to_ticket_id(item),
        "title": item.title,
        "description": item.description,
        "status": item.status,
        "assignee": item.assignee,
        "url": item.url,
        "metadata": metadata,
        "cached_at": now,
        "created_at": item.created_at or now,
        "updated_at": item.updated_at,
    }


def _upsert_rows(session: Session, rows: list[dict[str, Any]], *, overwrite_created_at: bool) -> None:
    if not rows:
        return

    table = TicketCache.__table__
    stmt = dialect_insert(session, table).values(rows)
    skip = set(CONFLICT_COLUMNS) | {"id"}
    if not overwrite_created_at:
        skip.add("created_at")
    update_cols = {
        col.name: stmt.excluded[col.name] for col in table.columns if col.name not in skip
    }
    stmt = stmt.on_conflict_do_update(index_elements=list(CONFLICT_COLUMNS), set_=update_cols)
    session.execute(stmt)


def cache_change_items(
    *,
    session: Session,
    organization_id: str,
    items: list[ChangeItem],
    now: datetime | None = None,
) -> None:
    """Best-effort upsert into ticket_cache. Never raises on database errors."""
    if not items:
        return

    now = now or datetime.now(UTC)
    provider = items[0].provider.value
    try:
        # ON CONFLICT cannot touch the same row twice in one statement; last one wins.
        latest: dict[tuple[str, ...], tuple[ChangeItem, dict[str, Any]]] = {}
        for item in items:
            row = change_item_to_ticket_cache_row(organization_id, item, now=now)
            latest[tuple(row[c] for c in CONFLICT_COLUMNS)] = (item, row)

        # Items without a source timestamp keep the created_at of the first sighting.
        with_created = [row for item, row in latest.values() if item.created_at]
        without_created = [row for item, row in latest.values() if item.created_at is None]

        with session.begin_nested():
            _upsert_rows(session, with_created, overwrite_created_at=True)
            _upsert_rows(session, without_created, overwrite_created_at=False)
    except (SQLAlchemyError, NotImplementedError):
        logger.exception(
            "Ticket cache upsert failed for organization=%s provider=%s items=%d",
            organization_id,
            provider,
            len(items),
        )
        observe_ticket_cache_write(provider=provider, outcome="failed")
        return

    observe_ticket_cache_write(provider=provider, outcome="ok")
