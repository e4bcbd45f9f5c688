from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from logic_deploy.db.session import get_db_session

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health(db: Session = Depends(get_db_session)) -> dict[str, str]:
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
