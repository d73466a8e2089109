from fastapi import APIRouter, Depends, HTTPException
import logging
from pydantic import BaseModel, field_validator
import datetime as dt
from typing import Any, List, Optional
from sqlalchemy.orm import Session
from mhealth_core.auth import current_user, get_db
from mhealth_core.backfill import PlannedLog, RoutineBackfill
from mhealth_core.config import Settings
from mhealth_core.models import Routine, RoutineVariable, Variable
from mhealth_core.routines import parse_hhmm
from ..deps import get_settings

router = APIRouter(prefix="/routines", tags=["routines"])
log = logging.getLogger("mhealth_api")


class TimeEntry(BaseModel):
    time: str

    @field_validator("time")
    @classmethod
    def _valid_time(cls, v: str) -> str:
        minutes = parse_hhmm(v)
        return f"{minutes // 60:02d}:{minutes % 60:02d}"


class RoutineVariableRequest(BaseModel):
    variable_id: int
    weekdays: List[int]
    times: List[TimeEntry]
    default_value: Any = None

    @field_validator("weekdays")
    @classmethod
    def _valid_weekdays(cls, v: List[int]) -> List[int]:
        if any(d < 1 or d > 7 for d in v):
            raise ValueError("weekdays must be 1 (Monday) .. 7 (Sunday)")
        return sorted(set(v))


class RoutineCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    is_active: bool = True
    variables: List[RoutineVariableRequest] = []


class RoutineUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class PlannedLogRequest(BaseModel):
    routine_variable_id: int
    date: dt.date
    time: Optional[str] = None  # "HH:MM"; first scheduled time when omitted

    @field_validator("time")
    @classmethod
    def _valid_time(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        minutes = parse_hhmm(v)
        return f"{minutes // 60:02d}:{minutes % 60:02d}"


class BatchLogRequest(BaseModel):
    logs: List[PlannedLogRequest]


def routine_out(routine: Routine) -> dict:
    return {
        "id": routine.id,
        "user_id": routine.user_id,
        "name": routine.name,
        "description": routine.description,
        "is_active": routine.is_active,
        "variables": [
            {
                "id": rv.id,
                "variable_id": rv.variable_id,
                "weekdays": rv.weekdays,
                "times": rv.times,
                "default_value": rv.default_value,
            }
            for rv in sorted(routine.variables, key=lambda v: v.id)
        ],
    }


def _own_routine(db: Session, routine_id: int, user) -> Routine:
    routine = db.query(Routine).filter(Routine.id == routine_id, Routine.user_id == user.id).first()
    if not routine:
        log.warning("routines.lookup not_found id=%s actor=%s", routine_id, user.username)
        raise HTTPException(status_code=404, detail="Routine not found")
    return routine


def _new_routine_variable(db: Session, data: RoutineVariableRequest) -> RoutineVariable:
    if db.get(Variable, data.variable_id) is None:
        raise HTTPException(status_code=400, detail=f"Unknown variable {data.variable_id}")
    return RoutineVariable(
        variable_id=data.variable_id,
        weekdays=data.weekdays,
        times=[t.model_dump() for t in data.times],
        default_value=data.default_value,
    )


@router.get("/")
def list_routines(user = Depends(current_user), db: Session = Depends(get_db)):
    items = db.query(Routine).filter(Routine.user_id == user.id).order_by(Routine.id).all()
    log.info("routines.list count=%d actor=%s", len(items), user.username)
    return [routine_out(r) for r in items]


@router.post("/")
def create_routine(data: RoutineCreateRequest, user = Depends(current_user), db: Session = Depends(get_db)):
    routine = Routine(user_id=user.id, name=data.name, description=data.description, is_active=data.is_active)
    for v in data.variables:
        routine.variables.append(_new_routine_variable(db, v))
    db.add(routine)
    db.commit()
    db.refresh(routine)
    log.info("routines.create id=%s variables=%d actor=%s", routine.id, len(routine.variables), user.username)
    return routine_out(routine)


@router.put("/{routine_id}")
def update_routine(routine_id: int, update: RoutineUpdateRequest, user = Depends(current_user), db: Session = Depends(get_db)):
    routine = _own_routine(db, routine_id, user)
    if update.name is not None:
        routine.name = update.name
    if update.description is not None:
        routine.description = update.description if update.description != "" else None
    if update.is_active is not None:
        routine.is_active = update.is_active
    db.commit()
    db.refresh(routine)
    log.info("routines.update ok id=%s actor=%s", routine.id, user.username)
    return routine_out(routine)


@router.delete("/{routine_id}")
def delete_routine(routine_id: int, user = Depends(current_user), db: Session = Depends(get_db)):
    routine = _own_routine(db, routine_id, user)
    db.delete(routine)
    db.commit()
    log.info("routines.delete ok id=%s actor=%s", routine_id, user.username)
    return {"status": "deleted"}


@router.post("/{routine_id}/variables")
def add_routine_variable(routine_id: int, data: RoutineVariableRequest, user = Depends(current_user), db: Session = Depends(get_db)):
    routine = _own_routine(db, routine_id, user)
    rv = _new_routine_variable(db, data)
    routine.variables.append(rv)
    db.commit()
    db.refresh(routine)
    log.info("routines.variable.add routine=%s rv=%s actor=%s", routine.id, rv.id, user.username)
    return routine_out(routine)


@router.delete("/{routine_id}/variables/{rv_id}")
def remove_routine_variable(routine_id: int, rv_id: int, user = Depends(current_user), db: Session = Depends(get_db)):
    routine = _own_routine(db, routine_id, user)
    rv = next((v for v in routine.variables if v.id == rv_id), None)
    if rv is None:
        raise HTTPException(status_code=404, detail="Routine variable not found")
    routine.variables.remove(rv)
    db.commit()
    db.refresh(routine)
    log.info("routines.variable.remove routine=%s rv=%s actor=%s", routine.id, rv_id, user.username)
    return routine_out(routine)


@router.post("/batch-log")
def batch_log(
    data: BatchLogRequest,
    user = Depends(current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Log planned routine values for past days; days that already have a log are skipped."""
    items = [
        PlannedLog(routine_variable_id=p.routine_variable_id, date=p.date, time=p.time)
        for p in data.logs
    ]
    result = RoutineBackfill(db, settings=settings).log_planned(user.id, items)
    log.info("routines.batch_log created=%d skipped=%d actor=%s", result.created, result.skipped, user.username)
    return result.to_dict()
