"""
Calcul des frais de traitement et de la répartition (logique pure: pas de Stripe, pas de DB).
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from epicerie import config
from epicerie.errors import ValidationError
from epicerie.utils.money import quantize, to_decimal

CARD = "card"
INTERAC = "interac"


@dataclass(frozen=True)
class PaymentMethod:
    id: str
    name: str
    fee_rate: Decimal
    processing_time_label: str

    @property
    def is_manual(self) -> bool:
        return self.id == INTERAC


PAYMENT_METHODS: Dict[str, PaymentMethod] = {
    CARD: PaymentMethod(
        id=CARD,
        name="Carte de débit/crédit",
        fee_rate=config.CARD_FEE_RATE,
        processing_time_label="Instantané",
    ),
    INTERAC: PaymentMethod(
        id=INTERAC,
        name="Interac e-Transfer",
        fee_rate=Decimal("0"),
        processing_time_label="Vérification manuelle",
    ),
}

# module epicerie.payments.fees
def get_method(method_id: str) -> PaymentMethod:
    """
    Retourne la méthode de paiement par identifiant ('card' | 'interac').
    - Soulève ValidationError(unsupported_method) si inconnue.
    """
    method = PAYMENT_METHODS.get((method_id or "").strip().lower())
    if not method:
        raise ValidationError(
            f"Méthode de paiement non supportée: {method_id}",
            "unsupported_method",
            fields={"method": "Méthode inconnue"},
        )
    return method

def _resolve(method: Any) -> PaymentMethod:
    return method if isinstance(method, PaymentMethod) else get_method(str(method))

def processing_fee(amount: Any, method: Any) -> Decimal:
    """Frais de traitement seuls, arrondis au centime."""
    base = to_decimal(amount)
    return quantize(base * _resolve(method).fee_rate)

def total_with_fees(amount: Any, method: Any) -> Decimal:
    """
    total = amount + amount * fee_rate(method), arrondi au centime.
    - card: total >= amount ; interac: total == amount.
    - Soulève ValidationError(invalid_amount) pour un montant négatif/NaN/non numérique.
    """
    base = to_decimal(amount)
    return quantize(base) + processing_fee(base, method)

def available_methods(merchant_has_interac: bool) -> List[PaymentMethod]:
    """Interac n'est proposé que si le marchand l'a activé."""
    return [m for m in PAYMENT_METHODS.values() if m.id != INTERAC or merchant_has_interac]

def quote(amount: Any, merchant_has_interac: bool) -> List[Dict[str, Any]]:
    """
    Devis par méthode pour l'écran de sélection:
    [{"method", "name", "feeRate", "fees", "total", "processingTime"}, ...]
    """
    base = to_decimal(amount)
    out: List[Dict[str, Any]] = []
    for method in available_methods(merchant_has_interac):
        fees = processing_fee(base, method)
        out.append({
            "method": method.id,
            "name": method.name,
            "feeRate": str(method.fee_rate),
            "fees": str(fees),
            "total": str(quantize(base) + fees),
            "processingTime": method.processing_time_label,
        })
    return out

def compute_breakdown(
    subtotal: Any,
    delivery_fee: Any,
    method: Any,
    commission_percent: Optional[Any] = None,
) -> Dict[str, Decimal]:
    """
    Répartition du total (frais inclus) entre marchand, livreur et plateforme.
    - marchand: sous-total
    - livreur: frais de livraison moins la commission plateforme
    - plateforme: commission sur la livraison + frais de traitement (+ résidu d'arrondi)
    La somme des trois parts est exactement égale à total_with_fees(subtotal + delivery_fee).
    """
    sub = quantize(to_decimal(subtotal, "subtotal"))
    fee = quantize(to_decimal(delivery_fee, "deliveryFee"))
    percent = to_decimal(
        config.DELIVERY_COMMISSION_PERCENT if commission_percent is None else commission_percent,
        "commissionPercent",
    )
    if percent > 100:
        raise ValidationError("Pourcentage de commission invalide", "invalid_amount", fields={"commissionPercent": "Maximum 100"})

    total = total_with_fees(sub + fee, method)
    commission = quantize(fee * percent / Decimal(100))
    driver_amount = fee - commission
    platform_amount = total - sub - driver_amount
    return {
        "merchant_amount": sub,
        "driver_amount": driver_amount,
        "platform_amount": platform_amount,
        "total_amount": total,
    }
