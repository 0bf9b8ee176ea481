# module epicerie.ledger.repository
from typing import Any, Dict, List
import logging

logger = logging.getLogger(__name__)


class LedgerRepository:
    """Lectures seules: les relevés tombent à zéro plutôt que d'échouer."""

    def __init__(self, client):
        self.client = client

    def commissions_for_driver(self, driver_id: str) -> List[Dict[str, Any]]:
        try:
            res = (
                self.client.table("commission_entries")
                .select("id, order_id, amount, status, created_at")
                .eq("driver_id", driver_id)
                .order("created_at", desc=True)
                .execute()
            )
            return res.data or []
        except Exception:
            logger.exception("ledger.repository.commissions_for_driver failed driver_id=%s", driver_id)
            return []

    def orders_for_merchant(self, merchant_id: str) -> List[Dict[str, Any]]:
        try:
            res = (
                self.client.table("orders")
                .select("id, merchant_amount, status, created_at")
                .eq("merchant_id", merchant_id)
                .order("created_at", desc=True)
                .execute()
            )
            return res.data or []
        except Exception:
            logger.exception("ledger.repository.orders_for_merchant failed merchant_id=%s", merchant_id)
            return []
