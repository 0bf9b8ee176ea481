from typing import Any, Dict

from fastapi import APIRouter, Depends

from epicerie.infra.supabase_client import get_db
from epicerie.utils.security import ensure_owner, require_user
from . import service as ledger_service
from .repository import LedgerRepository

router = APIRouter(prefix="/ledger", tags=["Ledger"])


def get_ledger_repository(db=Depends(get_db)) -> LedgerRepository:
    return LedgerRepository(db)


@router.get("/drivers/{driver_id}")
def driver_summary(
    driver_id: str,
    user: Dict[str, Any] = Depends(require_user),
    repository: LedgerRepository = Depends(get_ledger_repository),
):
    """Relevé du livreur: {today, week, month} x {total, pending, completed, count} + pending/completed global."""
    ensure_owner(user, driver_id)
    return ledger_service.driver_summary(repository, driver_id)

@router.get("/merchants/{merchant_id}")
def merchant_summary(
    merchant_id: str,
    user: Dict[str, Any] = Depends(require_user),
    repository: LedgerRepository = Depends(get_ledger_repository),
):
    ensure_owner(user, merchant_id)
    return ledger_service.merchant_summary(repository, merchant_id)
