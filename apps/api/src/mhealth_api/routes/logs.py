from fastapi import APIRouter, Depends, HTTPException, Query
import logging
from datetime import datetime, timezone
from pydantic import BaseModel
from typing import Any, Optional
from sqlalchemy.orm import Session
from mhealth_core.auth import current_user, get_db
from mhealth_core.autolog import stringify_value
from mhealth_core.models import LogEntry, Routine, Variable

router = APIRouter(prefix="/logs", tags=["logs"])
log = logging.getLogger("mhealth_api")


class LogCreateRequest(BaseModel):
    variable_id: int
    value: Any
    date: Optional[datetime] = None
    routine_id: Optional[int] = None
    notes: Optional[str] = None


def _as_utc_naive(dt: Optional[datetime]) -> datetime:
    if dt is None:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def log_out(entry: LogEntry) -> dict:
    return {
        "id": entry.id,
        "variable_id": entry.variable_id,
        "routine_id": entry.routine_id,
        "date": entry.date.isoformat() + "Z",
        "value": entry.value,
        "source": entry.source,
        "notes": entry.notes,
    }


@router.get("/")
def list_logs(
    variable_id: Optional[int] = None,
    source: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    user = Depends(current_user),
    db: Session = Depends(get_db),
):
    q = db.query(LogEntry).filter(LogEntry.user_id == user.id)
    if variable_id is not None:
        q = q.filter(LogEntry.variable_id == variable_id)
    if source:
        q = q.filter(LogEntry.source == source)
    items = q.order_by(LogEntry.date.desc(), LogEntry.id.desc()).limit(limit).all()
    return [log_out(e) for e in items]


@router.post("/")
def create_log(data: LogCreateRequest, user = Depends(current_user), db: Session = Depends(get_db)):
    if db.get(Variable, data.variable_id) is None:
        raise HTTPException(status_code=400, detail=f"Unknown variable {data.variable_id}")
    if data.routine_id is not None:
        routine = db.get(Routine, data.routine_id)
        if routine is None or routine.user_id != user.id:
            raise HTTPException(status_code=404, detail="Routine not found")
    entry = LogEntry(
        user_id=user.id,
        variable_id=data.variable_id,
        routine_id=data.routine_id,
        date=_as_utc_naive(data.date),
        value=stringify_value(data.value),
        source="manual",
        notes=data.notes,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    log.info("logs.create id=%s variable=%s actor=%s", entry.id, entry.variable_id, user.username)
    return log_out(entry)
