from fastapi import APIRouter, Depends
import logging
from pydantic import BaseModel
from typing import Optional
from sqlalchemy.orm import Session
from mhealth_core.auth import current_user, get_db
from mhealth_core.models import Variable

router = APIRouter(prefix="/variables", tags=["variables"])
log = logging.getLogger("mhealth_api")


class VariableCreateRequest(BaseModel):
    label: str
    unit: Optional[str] = None


@router.get("/")
def list_variables(user = Depends(current_user), db: Session = Depends(get_db)):
    return [{"id": v.id, "label": v.label, "unit": v.unit} for v in db.query(Variable).order_by(Variable.label).all()]


@router.post("/")
def create_variable(data: VariableCreateRequest, user = Depends(current_user), db: Session = Depends(get_db)):
    variable = Variable(label=data.label, unit=data.unit)
    db.add(variable)
    db.commit()
    db.refresh(variable)
    log.info("variables.create id=%s label=%s actor=%s", variable.id, variable.label, user.username)
    return {"id": variable.id, "label": variable.label, "unit": variable.unit}
