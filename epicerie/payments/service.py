"""
Cas d'usage 'payments': devis par méthode, création de hold côté serveur,
dépôt des preuves Interac et traitement des événements Stripe.
"""
import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from epicerie import config
from epicerie.errors import CheckoutError, InvalidBreakdown, ReferenceConflict, ValidationError
from epicerie.orders.models import Breakdown, FinalizeOrderRequest, OrderDraft
from epicerie.orders.repository import OrderRepository
from epicerie.orders.service import OrderService
from epicerie.utils.money import format_amount, quantize, to_decimal, to_minor_units
from epicerie.utils.schemas import CamelModel
from .fees import CARD
from .interac import validate_proof_file
from .repository import ProofStorage

logger = logging.getLogger(__name__)

# Limite Stripe pour une valeur de metadata
METADATA_VALUE_MAX = 500


class HoldRequest(CamelModel):
    attempt_id: str
    amount: Decimal
    breakdown: Optional[Breakdown] = None
    order_draft: Optional[OrderDraft] = None


# module epicerie.payments.service
def hold_metadata(user_id: str, attempt_id: str, breakdown: Optional[Breakdown], draft: Optional[OrderDraft]) -> Dict[str, str]:
    """
    Metadata du PaymentIntent (valeurs str, <= 500 caractères chacune).
    - order_draft n'est joint qu'avec la répartition et s'il tient dans la limite:
      le webhook ne peut finaliser que dans ce cas.
    """
    meta: Dict[str, str] = {"user_id": user_id, "attempt_id": attempt_id}
    if breakdown is not None:
        meta["merchant_amount"] = format_amount(breakdown.merchant_amount)
        meta["driver_amount"] = format_amount(breakdown.driver_amount)
        meta["platform_amount"] = format_amount(breakdown.platform_amount)
    if draft is not None and breakdown is not None:
        encoded = json.dumps(draft.to_json(), separators=(",", ":"))
        if len(encoded) <= METADATA_VALUE_MAX:
            meta["order_draft"] = encoded
    return meta

def create_hold(gateway, user_id: str, request: HoldRequest) -> Dict[str, Any]:
    """
    Crée le hold Stripe pour une tentative (idempotency_key = attemptId).
    - Le montant doit être > 0 et égal au total du brouillon si fourni.
    - Un brouillon exige sa répartition (sinon le webhook ne pourrait pas finaliser).
    Retour: {holdRef, clientSecret, amount}
    """
    attempt_id = (request.attempt_id or "").strip()
    if not attempt_id:
        raise ValidationError("attemptId requis", fields={"attemptId": "Requis"})
    amount = quantize(to_decimal(request.amount))
    if amount <= 0:
        raise ValidationError("Le montant doit être supérieur à zéro", "invalid_amount", fields={"amount": "Montant invalide"})
    if request.order_draft is not None and request.order_draft.total_amount != amount:
        raise InvalidBreakdown("Le montant ne correspond pas au total de la commande", "amount_mismatch")
    if request.breakdown is not None and request.breakdown.total() != amount:
        raise InvalidBreakdown("Répartition incohérente avec le montant")
    if request.order_draft is not None and request.breakdown is None:
        raise ValidationError("Répartition requise avec le brouillon de commande", fields={"breakdown": "Requis"})

    intent = gateway.create_hold(
        amount_cents=to_minor_units(amount),
        currency=config.CURRENCY,
        idempotency_key=attempt_id,
        metadata=hold_metadata(user_id, attempt_id, request.breakdown, request.order_draft),
    )
    logger.info("payments.create_hold attempt_id=%s hold=%s amount=%s", attempt_id, intent.get("id"), amount)
    return {"holdRef": intent.get("id"), "clientSecret": intent.get("client_secret"), "amount": format_amount(amount)}

def store_proofs(
    storage: ProofStorage,
    owner_id: str,
    files: List[Tuple[str, str, bytes]],
    max_files: int = config.PROOF_MAX_FILES,
    max_bytes: int = config.PROOF_MAX_BYTES,
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Valide et dépose chaque fichier (name, mime_type, content) individuellement.
    Retour: {"accepted": [{name, size, mimeType, storageRef}], "rejected": [{name, reason, error}]}
    """
    accepted: List[Dict[str, Any]] = []
    rejected: List[Dict[str, Any]] = []
    for name, mime_type, content in files:
        try:
            proof = validate_proof_file(name, len(content or b""), mime_type, max_bytes)
            if len(accepted) >= max_files:
                raise ValidationError(f"Maximum {max_files} fichiers autorisés", "too_many_files")
            ref = storage.upload(owner_id, proof.name, content, proof.mime_type)
        except CheckoutError as e:
            rejected.append({"name": name, "reason": e.reason, "error": e.message})
            continue
        accepted.append({"name": proof.name, "size": proof.size, "mimeType": proof.mime_type, "storageRef": ref})
    logger.info("payments.store_proofs owner=%s accepted=%s rejected=%s", owner_id, len(accepted), len(rejected))
    return {"accepted": accepted, "rejected": rejected}

PERMANENT_REJECTIONS = (InvalidBreakdown, ValidationError, ReferenceConflict)
SPLIT_KEYS = ("merchant_amount", "driver_amount", "platform_amount")


def _rejected(intent_ref: str, reason: str) -> Dict[str, Any]:
    logger.error("payments.webhook rejected intent=%s reason=%s", intent_ref, reason)
    return {"status": "rejected", "reason": reason}

def _finalize_from_intent(intent: Dict[str, Any], order_service: OrderService) -> Dict[str, Any]:
    """
    Finalise la commande d'un PaymentIntent réussi.
    - Rejets définitifs (metadata illisible, répartition absente ou incohérente, référence en conflit):
      {"status": "rejected", "reason": ...} en 2xx, pour que Stripe ne rejoue pas l'événement.
    - Passerelle indisponible ou stockage en échec: l'erreur remonte (non-2xx, Stripe réessaie).
    """
    intent_ref = intent.get("id") or ""
    meta = intent.get("metadata") or {}
    raw_draft = meta.get("order_draft")
    if not raw_draft:
        return {"status": "ignored", "reason": "no_order_draft"}
    if not all(meta.get(k) for k in SPLIT_KEYS):
        return _rejected(intent_ref, "missing_breakdown")
    try:
        request = FinalizeOrderRequest(
            payment_reference=intent_ref,
            method=CARD,
            breakdown=Breakdown(**{k: meta[k] for k in SPLIT_KEYS}),
            order_draft=OrderDraft.model_validate(json.loads(raw_draft)),
        )
    except ValueError:
        # json.JSONDecodeError et pydantic.ValidationError
        return _rejected(intent_ref, "invalid_metadata")

    try:
        order, created = order_service.finalize(request)
    except PERMANENT_REJECTIONS as e:
        return _rejected(intent_ref, e.reason)
    return {"status": "ok", "orderId": order.id, "created": created}

def handle_event(event: Dict[str, Any], order_service: OrderService, orders: OrderRepository) -> Dict[str, Any]:
    """
    Traite un événement Stripe déjà vérifié.
    - payment_intent.succeeded: finalise via le même service idempotent que POST /orders
    - payment_intent.payment_failed / canceled: commande éventuelle -> 'cancelled'
    - charge.refunded: commande du PaymentIntent -> 'refunded'
    - autres: {"status": "ignored"}
    """
    etype = (event or {}).get("type") or ""
    obj = ((event or {}).get("data") or {}).get("object") or {}

    if etype == "payment_intent.succeeded":
        return _finalize_from_intent(obj, order_service)
    if etype in ("payment_intent.payment_failed", "payment_intent.canceled"):
        orders.mark_payment_status(obj.get("id") or "", "cancelled")
        return {"status": "ok", "type": etype}
    if etype == "charge.refunded":
        intent_ref = obj.get("payment_intent")
        if intent_ref:
            orders.mark_payment_status(intent_ref, "refunded")
        return {"status": "ok", "type": etype}
    return {"status": "ignored"}
