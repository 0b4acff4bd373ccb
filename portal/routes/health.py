from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import get_db
from ..logging import structlog


router = APIRouter(tags=["health"])
log = structlog.get_logger(__name__)


@router.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        log.error("health_check_failed", error=str(e))
        return JSONResponse(status_code=500, content={"ok": False, "message": "Database unavailable"})
    return {"ok": True, "message": "Database connected"}
