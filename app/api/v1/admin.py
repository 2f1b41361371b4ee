"""
Admin run maintenance endpoints.

Access: only users with is_admin=True.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import sessionmaker

from app.api.deps import get_session_maker, get_user_locks, require_admin
from app.application.reconciliation import ReconciliationService
from app.application.run_backfill import BackfillOptions, RunBackfillService
from app.application.runs import RunValidationError
from app.infrastructure.db.models import User
from app.infrastructure.locks import UserLockRegistry
from app.utils.dates import month_bounds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin/runs", tags=["admin"])


# === Request models ===

class BackfillRequest(BaseModel):
    dry_run: bool = True
    batch_size: int | None = Field(default=None, ge=1, le=1000)
    skip_backup: bool = False
    user_ids: list[int] | None = None


class ReconcileRequest(BaseModel):
    user_ids: list[int] | None = None
    year_month: str | None = None
    repair: bool = False

    @field_validator("year_month")
    @classmethod
    def validate_year_month(cls, v: str | None) -> str | None:
        """Формат YYYY-MM"""
        if v is not None:
            month_bounds(v)
        return v


# === Endpoints ===

@router.post("/backfill")
def run_backfill(
    req: BackfillRequest,
    admin_user: User = Depends(require_admin),
    session_factory: sessionmaker = Depends(get_session_maker),
    locks: UserLockRegistry = Depends(get_user_locks),
):
    """Пересобрать серии из click log (по умолчанию dry-run)"""
    logger.info(
        "Admin %s started backfill dry_run=%s skip_backup=%s",
        admin_user.id, req.dry_run, req.skip_backup,
    )
    service = RunBackfillService(session_factory, locks=locks)
    return service.backfill(BackfillOptions(
        dry_run=req.dry_run,
        batch_size=req.batch_size,
        skip_backup=req.skip_backup,
        user_ids=req.user_ids,
    ))


@router.post("/reconcile")
def run_reconciliation(
    req: ReconcileRequest,
    admin_user: User = Depends(require_admin),
    session_factory: sessionmaker = Depends(get_session_maker),
    locks: UserLockRegistry = Depends(get_user_locks),
):
    """Сверка месячных агрегатов с сериями"""
    logger.info(
        "Admin %s started reconciliation month=%s repair=%s",
        admin_user.id, req.year_month, req.repair,
    )
    service = ReconciliationService(session_factory, locks=locks)
    try:
        return service.bulk_reconciliation(
            user_ids=req.user_ids,
            ym=req.year_month,
            repair=req.repair,
        )
    except RunValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
