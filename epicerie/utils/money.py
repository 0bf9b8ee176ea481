"""
Helpers monétaires (Decimal, arrondi au centime, unités mineures Stripe).
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from epicerie.errors import ValidationError

CENT = Decimal("0.01")

# module epicerie.utils.money
def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """
    Convertit une valeur (str|int|float|Decimal) en Decimal fini et positif ou nul.
    - Les floats passent par str() pour éviter les artefacts binaires (0.1 -> 0.1).
    - Soulève ValidationError(invalid_amount) si négatif, NaN, infini ou non numérique.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Montant invalide pour {field}", "invalid_amount", fields={field: "Montant invalide"})
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Montant invalide pour {field}", "invalid_amount", fields={field: "Montant invalide"})
    if not amount.is_finite():
        raise ValidationError(f"Montant invalide pour {field}", "invalid_amount", fields={field: "Montant invalide"})
    if amount < 0:
        raise ValidationError(f"Montant négatif pour {field}", "invalid_amount", fields={field: "Le montant doit être positif"})
    return amount

def quantize(amount: Decimal) -> Decimal:
    """Arrondi au centime (ROUND_HALF_UP)."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)

def to_minor_units(amount: Decimal) -> int:
    """Montant en centimes pour la passerelle (ex: 51.50 -> 5150)."""
    return int((quantize(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))

def from_minor_units(cents: int) -> Decimal:
    return quantize(Decimal(int(cents or 0)) / 100)

def format_amount(amount: Decimal) -> str:
    """Représentation stable à deux décimales (ex: '51.50')."""
    return f"{quantize(amount):.2f}"
