"""
Accès aux données pour la feature 'orders' (tables orders, commission_entries).
"""
from typing import Any, Dict, Optional
import logging

from postgrest.exceptions import APIError

from epicerie.errors import StorageError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


class DuplicateSubmission(Exception):
    """Une commande existe déjà pour cette payment_reference (contrainte unique)."""

    def __init__(self, payment_reference: str):
        super().__init__(payment_reference)
        self.payment_reference = payment_reference


def _api_error_code(e: APIError) -> Optional[str]:
    code = getattr(e, "code", None)
    if not code and e.args and isinstance(e.args[0], dict):
        code = e.args[0].get("code")
    return str(code) if code else None


def _first(data: Any) -> Optional[Dict[str, Any]]:
    if isinstance(data, list):
        return data[0] if data else None
    if isinstance(data, dict):
        return data or None
    return None


# module epicerie.orders.repository
class OrderRepository:
    def __init__(self, client):
        self.client = client

    def get_by_reference(self, payment_reference: str) -> Optional[Dict[str, Any]]:
        """
        Lecture d'idempotence: commande existante pour cette référence, sinon None.
        - Soulève StorageError si la lecture échoue (on ne crée jamais « à l'aveugle »).
        """
        try:
            res = (
                self.client.table("orders")
                .select("*")
                .eq("payment_reference", payment_reference)
                .limit(1)
                .execute()
            )
            return _first(res.data)
        except Exception:
            logger.exception("orders.repository.get_by_reference failed ref=%s", payment_reference)
            raise StorageError("Lecture des commandes impossible")

    def get_by_id(self, order_id: str) -> Optional[Dict[str, Any]]:
        try:
            res = self.client.table("orders").select("*").eq("id", order_id).limit(1).execute()
            return _first(res.data)
        except Exception:
            logger.exception("orders.repository.get_by_id failed id=%s", order_id)
            return None

    def create_order_transaction(self, order: Dict[str, Any], commission: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Insère la commande et sa ligne de commission dans une seule transaction (RPC Postgres).
        - Soulève DuplicateSubmission sur violation d'unicité (23505) de payment_reference.
        - Soulève StorageError pour toute autre erreur: rien n'est créé.
        """
        ref = order.get("payment_reference") or ""
        try:
            res = self.client.rpc(
                "create_order_transaction",
                {"p_order": order, "p_commission": commission},
            ).execute()
        except APIError as e:
            if _api_error_code(e) == UNIQUE_VIOLATION:
                raise DuplicateSubmission(ref)
            logger.exception("orders.repository.create_order_transaction failed ref=%s", ref)
            raise StorageError("Création de la commande impossible")
        except Exception:
            logger.exception("orders.repository.create_order_transaction failed ref=%s", ref)
            raise StorageError("Création de la commande impossible")

        row = _first(res.data)
        if not row:
            raise StorageError("Création de la commande sans retour")
        return row

    def mark_payment_status(self, payment_reference: str, status: str) -> bool:
        """Mise à jour best-effort du statut (webhook: échec, annulation, remboursement)."""
        try:
            (
                self.client.table("orders")
                .update({"status": status})
                .eq("payment_reference", payment_reference)
                .execute()
            )
            return True
        except Exception:
            logger.exception("orders.repository.mark_payment_status failed ref=%s status=%s", payment_reference, status)
            return False
