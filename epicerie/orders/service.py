"""
Cas d'usage 'orders': finalisation idempotente d'une commande payée.

Étapes de finalize():
  0) conservation de la répartition: marchand + livreur + plateforme == total
  1) carte: relecture du hold (retries sur erreurs de transport), hold émis pour le client
     du brouillon (metadata user_id), statut 'succeeded',
     montant du hold == total en centimes ; interac: référence de preuve au format proof_<hex>
  2) idempotence: commande existante pour la référence -> retournée telle quelle,
     si elle appartient au même client et à la même méthode (sinon ReferenceConflict)
  3) insertion transactionnelle (RPC) ; doublon concurrent (23505) -> relecture
"""
import logging
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from epicerie import config
from epicerie.errors import (
    GatewayError,
    InvalidBreakdown,
    PaymentNotConfirmed,
    ReferenceConflict,
    StorageError,
    ValidationError,
)
from epicerie.payments.fees import CARD, INTERAC
from epicerie.utils.money import format_amount, to_minor_units
from .models import FinalizeOrderRequest, Order, STATUS_CONFIRMED, STATUS_PENDING_VERIFICATION
from .repository import DuplicateSubmission, OrderRepository

logger = logging.getLogger(__name__)

# Format produit par epicerie.payments.interac.new_proof_reference
PROOF_REFERENCE_RE = re.compile(r"^proof_[0-9a-f]{32}$")


def new_order_number() -> str:
    return f"CM{int(time.time() * 1000)}{secrets.randbelow(1000):03d}"


def check_breakdown(request: FinalizeOrderRequest) -> None:
    """Soulève InvalidBreakdown si la somme des parts diffère du total (au centime près)."""
    parts = request.breakdown.total()
    total = request.order_draft.total_amount
    if parts != total:
        logger.error(
            "orders.check_breakdown mismatch ref=%s parts=%s total=%s",
            request.payment_reference, parts, total,
        )
        raise InvalidBreakdown(
            f"Répartition incohérente: {format_amount(parts)} != {format_amount(total)}",
            expected=format_amount(total),
            actual=format_amount(parts),
        )


class OrderService:
    def __init__(
        self,
        repository: OrderRepository,
        gateway=None,
        retry_attempts: int = config.GATEWAY_RETRY_ATTEMPTS,
        retry_base_delay: float = config.GATEWAY_RETRY_BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repository = repository
        self.gateway = gateway
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep

    def finalize(self, request: FinalizeOrderRequest) -> Tuple[Order, bool]:
        """
        Retourne (order, created).
        - created=False: la commande existait déjà pour cette payment_reference.
        """
        ref = request.payment_reference
        check_breakdown(request)

        if request.method == CARD:
            payment_data = self._verify_card_hold(ref, request)
            status = STATUS_CONFIRMED
        elif request.method == INTERAC:
            payment_data = self._interac_payment_data(ref, request)
            status = STATUS_PENDING_VERIFICATION
        else:
            raise ValidationError(f"Méthode de paiement non supportée: {request.method}", "unsupported_method")

        existing = self.repository.get_by_reference(ref)
        if existing:
            self._check_same_submission(existing, request)
            logger.info("orders.finalize idempotent hit ref=%s id=%s", ref, existing.get("id"))
            return Order.from_row(existing), False

        order_row, commission_row = self._build_rows(request, status, payment_data)
        try:
            row = self.repository.create_order_transaction(order_row, commission_row)
        except DuplicateSubmission:
            # Soumission concurrente gagnante: on renvoie sa commande
            existing = self.repository.get_by_reference(ref)
            if not existing:
                raise StorageError("Commande en doublon introuvable")
            self._check_same_submission(existing, request)
            logger.info("orders.finalize duplicate resolved ref=%s id=%s", ref, existing.get("id"))
            return Order.from_row(existing), False

        logger.info("orders.finalize created ref=%s id=%s status=%s", ref, row.get("id"), status)
        return Order.from_row(row), True

    def get_by_reference(self, payment_reference: str) -> Optional[Order]:
        row = self.repository.get_by_reference(payment_reference)
        return Order.from_row(row) if row else None

    # --- étapes internes ---

    def _check_same_submission(self, existing: Dict[str, Any], request: FinalizeOrderRequest) -> None:
        """La commande existante doit provenir du même client et de la même méthode."""
        same_customer = str(existing.get("customer_id") or "") == request.order_draft.customer_id
        same_method = (existing.get("payment_method") or "") == request.method
        if not (same_customer and same_method):
            logger.warning(
                "orders.finalize reference conflict ref=%s customer=%s method=%s",
                request.payment_reference, request.order_draft.customer_id, request.method,
            )
            raise ReferenceConflict("Cette référence de paiement est déjà utilisée")

    def _retrieve_hold(self, hold_ref: str) -> Dict[str, Any]:
        """Relecture du hold avec backoff exponentiel, uniquement sur erreurs de transport."""
        if self.gateway is None:
            raise GatewayError("Passerelle de paiement non configurée", "gateway_unavailable")
        attempt = 0
        while True:
            try:
                return self.gateway.retrieve_hold(hold_ref)
            except GatewayError as e:
                attempt += 1
                if not e.retryable or attempt >= self.retry_attempts:
                    if e.retryable:
                        logger.warning("orders.retrieve_hold exhausted ref=%s attempts=%s", hold_ref, attempt)
                    raise
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.info("orders.retrieve_hold retry ref=%s attempt=%s delay=%.2f", hold_ref, attempt, delay)
                self._sleep(delay)

    def _verify_card_hold(self, ref: str, request: FinalizeOrderRequest) -> Dict[str, Any]:
        intent = self._retrieve_hold(ref)
        owner = str((intent.get("metadata") or {}).get("user_id") or "")
        if owner != request.order_draft.customer_id:
            logger.warning("orders.verify_card_hold owner mismatch ref=%s customer=%s", ref, request.order_draft.customer_id)
            raise ReferenceConflict("Ce paiement n'appartient pas à ce client")
        status = intent.get("status") or ""
        if status != "succeeded":
            raise PaymentNotConfirmed(f"Paiement non confirmé (status={status})", status=status)

        expected = to_minor_units(request.order_draft.total_amount)
        amount = int(intent.get("amount") or 0)
        if amount != expected:
            logger.error("orders.verify_card_hold amount mismatch ref=%s hold=%s expected=%s", ref, amount, expected)
            raise InvalidBreakdown(
                "Le montant du paiement ne correspond pas au total de la commande",
                "amount_mismatch",
                expected=expected,
                actual=amount,
            )
        return {
            "gateway": "stripe",
            "holdStatus": status,
            "amountCents": amount,
            "currency": intent.get("currency") or config.CURRENCY,
            "paymentMethod": intent.get("payment_method"),
        }

    def _interac_payment_data(self, ref: str, request: FinalizeOrderRequest) -> Dict[str, Any]:
        if not PROOF_REFERENCE_RE.match(ref):
            raise ValidationError(
                "Référence de preuve invalide", "invalid_reference", fields={"paymentReference": "Format proof_<hex> attendu"}
            )
        data: Dict[str, Any] = {"proofReference": ref}
        if request.proof is not None:
            if request.proof.reference and request.proof.reference != ref:
                raise ValidationError("Référence de preuve incohérente", fields={"proof": "Référence différente"})
            data["proof"] = request.proof.to_json()
        return data

    def _build_rows(self, request: FinalizeOrderRequest, status: str, payment_data: Dict[str, Any]):
        draft = request.order_draft
        split = request.breakdown
        order_row = {
            "order_number": new_order_number(),
            "customer_id": draft.customer_id,
            "merchant_id": draft.merchant_id,
            "driver_id": draft.driver_id,
            "items": [i.model_dump(mode="json") for i in draft.items],
            "subtotal": format_amount(draft.subtotal),
            "delivery_fee": format_amount(draft.delivery_fee),
            "total_amount": format_amount(draft.total_amount),
            "payment_method": request.method,
            "payment_reference": request.payment_reference,
            "payment_data": payment_data,
            "status": status,
            "merchant_amount": format_amount(split.merchant_amount),
            "driver_amount": format_amount(split.driver_amount),
            "platform_amount": format_amount(split.platform_amount),
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        commission_row = None
        if draft.driver_id:
            commission_row = {
                "driver_id": draft.driver_id,
                "amount": format_amount(split.driver_amount),
                "status": "pending",
            }
        return order_row, commission_row
