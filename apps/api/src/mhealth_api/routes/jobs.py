from datetime import date, datetime, timezone
from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
import logging
from typing import Optional
from sqlalchemy.orm import Session
from mhealth_core.auth import get_db, require_cron_secret
from mhealth_core.autolog import AutoLogRunner
from mhealth_core.backfill import RoutineBackfill
from mhealth_core.config import Settings
from mhealth_core.errors import UpstreamFetchError
from mhealth_core.notifications import NotificationScheduler
from ..deps import get_push_sender, get_settings

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_cron_secret)])
log = logging.getLogger("mhealth_api")


@router.post("/auto-log")
@router.get("/auto-log", include_in_schema=False)
def run_auto_log(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    try:
        report = AutoLogRunner(db, settings=settings).run()
    except UpstreamFetchError as e:
        log.error("jobs.auto_log failed: %s", e)
        return JSONResponse(status_code=500, content={"error": str(e)})
    log.info("jobs.auto_log ok logged=%d", len(report.logged))
    return report.to_dict()


@router.post("/auto-log/backfill")
def backfill_auto_logs(
    target_date: Optional[date] = Body(None, embed=True),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    target = target_date or datetime.now(timezone.utc).date()
    try:
        result = RoutineBackfill(db, settings=settings).backfill_day(target)
    except UpstreamFetchError as e:
        log.error("jobs.backfill failed date=%s: %s", target.isoformat(), e)
        return JSONResponse(status_code=500, content={"error": str(e)})
    return {"target_date": target.isoformat(), **result.to_dict()}


@router.post("/routine-notifications")
def run_routine_notifications(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    sender=Depends(get_push_sender),
):
    try:
        report = NotificationScheduler(db, sender=sender, settings=settings).run()
    except UpstreamFetchError as e:
        log.error("jobs.notifications failed: %s", e)
        return JSONResponse(status_code=500, content={"error": str(e)})
    log.info("jobs.notifications ok sent=%d errors=%d", report.notifications_sent, report.errors)
    return {"success": True, **report.to_dict()}
