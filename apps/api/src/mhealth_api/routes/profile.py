from fastapi import APIRouter, Depends, HTTPException
import logging
from pydantic import BaseModel
from typing import Optional
from sqlalchemy.orm import Session
from mhealth_core.auth import current_user, get_db
from mhealth_core.models import Profile
from mhealth_core.timezones import DEFAULT_TIMEZONE, is_valid_timezone

router = APIRouter(prefix="/profile", tags=["profile"])
log = logging.getLogger("mhealth_api")


class TimezoneRequest(BaseModel):
    timezone: Optional[str] = None


@router.get("/timezone")
def get_timezone(user = Depends(current_user), db: Session = Depends(get_db)):
    profile = db.get(Profile, user.id)
    stored = profile.timezone if profile else None
    return {"timezone": stored or DEFAULT_TIMEZONE, "is_default": not stored}


@router.put("/timezone")
def update_timezone(data: TimezoneRequest, user = Depends(current_user), db: Session = Depends(get_db)):
    if not data.timezone:
        raise HTTPException(status_code=400, detail="Timezone is required")
    if not is_valid_timezone(data.timezone):
        raise HTTPException(status_code=400, detail=f"Unknown timezone {data.timezone}")
    profile = db.get(Profile, user.id)
    if profile is None:
        profile = Profile(id=user.id)
        db.add(profile)
    profile.timezone = data.timezone
    db.commit()
    log.info("profile.timezone ok tz=%s actor=%s", data.timezone, user.username)
    return {"success": True, "timezone": data.timezone}
