from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from relnotes.core.config import get_settings
from relnotes.core.deps import require_rate_limit
from relnotes.db.session import get_session

router = APIRouter(tags=["health"])


@router.get("/healthz", dependencies=[Depends(require_rate_limit("public"))])
def healthz() -> dict[str, str]:
    return {"status": "ok", "version": get_settings().VERSION}


@router.get("/readyz")
def readyz(session: Session = Depends(get_session)) -> dict[str, str]:
    try:
        session.execute(text("select 1"))
    except SQLAlchemyError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="database not ready",
        ) from e
    return {"status": "ready"}
