"""
Accès aux données du coffre de moyens de paiement (table customer_payment_methods).
"""
from typing import Any, Dict, List, Optional
import logging

from epicerie.errors import StorageError

logger = logging.getLogger(__name__)

TABLE = "customer_payment_methods"


# module epicerie.vault.repository
class InstrumentRepository:
    def __init__(self, client):
        self.client = client

    def first_customer_ref(self, owner_id: str) -> Optional[str]:
        """Premier stripe_customer_id connu pour ce client (ligne la plus ancienne), sinon None."""
        try:
            res = (
                self.client.table(TABLE)
                .select("stripe_customer_id")
                .eq("user_id", owner_id)
                .not_.is_("stripe_customer_id", "null")
                .order("created_at")
                .limit(1)
                .execute()
            )
            rows = res.data or []
            return (rows[0].get("stripe_customer_id") or None) if rows else None
        except Exception:
            # Lecture best-effort: au pire un second client Stripe est créé
            logger.exception("vault.repository.first_customer_ref failed owner=%s", owner_id)
            return None

    def list_active(self, owner_id: str) -> List[Dict[str, Any]]:
        try:
            res = (
                self.client.table(TABLE)
                .select("*")
                .eq("user_id", owner_id)
                .eq("is_active", True)
                .order("created_at")
                .execute()
            )
            return res.data or []
        except Exception:
            logger.exception("vault.repository.list_active failed owner=%s", owner_id)
            raise StorageError("Lecture des moyens de paiement impossible")

    def get(self, instrument_id: str) -> Optional[Dict[str, Any]]:
        try:
            res = self.client.table(TABLE).select("*").eq("id", instrument_id).limit(1).execute()
            rows = res.data or []
            return rows[0] if rows else None
        except Exception:
            logger.exception("vault.repository.get failed id=%s", instrument_id)
            raise StorageError("Lecture du moyen de paiement impossible")

    def find_active_by_token(self, owner_id: str, method_token: str) -> Optional[Dict[str, Any]]:
        for row in self.list_active(owner_id):
            if row.get("stripe_payment_method_id") == method_token:
                return row
        return None

    def insert(self, row: Dict[str, Any]) -> Dict[str, Any]:
        try:
            res = self.client.table(TABLE).insert(row).execute()
        except Exception:
            logger.exception("vault.repository.insert failed owner=%s", row.get("user_id"))
            raise StorageError("Impossible d'enregistrer le moyen de paiement")
        data = res.data or []
        if isinstance(data, list):
            return data[0] if data else row
        return data or row

    def clear_default(self, owner_id: str) -> None:
        try:
            (
                self.client.table(TABLE)
                .update({"is_default": False})
                .eq("user_id", owner_id)
                .eq("is_default", True)
                .execute()
            )
        except Exception:
            logger.exception("vault.repository.clear_default failed owner=%s", owner_id)
            raise StorageError("Mise à jour du moyen par défaut impossible")

    def mark_default(self, instrument_id: str) -> None:
        try:
            self.client.table(TABLE).update({"is_default": True}).eq("id", instrument_id).execute()
        except Exception:
            logger.exception("vault.repository.mark_default failed id=%s", instrument_id)
            raise StorageError("Mise à jour du moyen par défaut impossible")

    def deactivate(self, instrument_id: str) -> None:
        """Suppression logique: jamais de DELETE."""
        try:
            (
                self.client.table(TABLE)
                .update({"is_active": False, "is_default": False})
                .eq("id", instrument_id)
                .execute()
            )
        except Exception:
            logger.exception("vault.repository.deactivate failed id=%s", instrument_id)
            raise StorageError("Suppression du moyen de paiement impossible")
