"""
Paiement par carte: validation locale des données, puis hold -> tokenisation -> confirmation.

Aucun état partiel n'est conservé: une tentative échouée est abandonnée
(annulation best-effort du hold) et la suivante crée un nouveau hold.
"""
import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from epicerie import config
from epicerie.errors import GatewayError, ValidationError
from epicerie.utils.money import to_decimal, to_minor_units, quantize

logger = logging.getLogger(__name__)

_EXPIRY_RE = re.compile(r"^(0[1-9]|1[0-2])/(\d{2})$")
_CVV_RE = re.compile(r"^\d{3,4}$")
_NUMBER_RE = re.compile(r"^\d{13,19}$")


@dataclass(frozen=True)
class CardDetails:
    number: str
    expiry: str
    cvv: str
    name: str

    @property
    def clean_number(self) -> str:
        return re.sub(r"\s", "", self.number or "")

    @property
    def last4(self) -> str:
        return self.clean_number[-4:]

    @property
    def exp_month(self) -> int:
        return int(self.expiry.split("/")[0])

    @property
    def exp_year(self) -> int:
        return 2000 + int(self.expiry.split("/")[1])


@dataclass(frozen=True)
class CardPaymentResult:
    gateway_reference: str
    last4: str
    brand: str
    amount: Decimal

    def payment_data(self) -> Dict[str, Any]:
        return {"last4": self.last4, "brand": self.brand}


# module epicerie.payments.card
def detect_brand(number: str) -> str:
    """Marque déduite du préfixe (Visa, Mastercard, American Express, Discover, sinon 'Carte')."""
    n = re.sub(r"\s", "", number or "")
    if n.startswith("4"):
        return "Visa"
    if re.match(r"^5[1-5]", n):
        return "Mastercard"
    if re.match(r"^3[47]", n):
        return "American Express"
    if n.startswith("6"):
        return "Discover"
    return "Carte"

def validate_card(card: CardDetails, today: Optional[date] = None) -> CardDetails:
    """
    Valide les champs carte et collecte toutes les erreurs avant de lever.
    - number: chiffres uniquement (espaces retirés), 13 à 19
    - expiry: MM/AA, pas antérieure au mois courant
    - cvv: 3 ou 4 chiffres
    - name: au moins 2 caractères non blancs
    Soulève ValidationError(invalid_card, fields={...}).
    """
    today = today or date.today()
    errors: Dict[str, str] = {}

    if not _NUMBER_RE.match(card.clean_number):
        errors["number"] = "Numéro de carte invalide (13-19 chiffres)"

    m = _EXPIRY_RE.match((card.expiry or "").strip())
    if not m:
        errors["expiry"] = "Format MM/AA requis"
    else:
        month, year = int(m.group(1)), int(m.group(2))
        current_year = today.year % 100
        if year < current_year or (year == current_year and month < today.month):
            errors["expiry"] = "Carte expirée"

    if not _CVV_RE.match(card.cvv or ""):
        errors["cvv"] = "CVV invalide (3-4 chiffres)"

    if len((card.name or "").strip()) < 2:
        errors["name"] = "Nom requis (minimum 2 caractères)"

    if errors:
        raise ValidationError("Veuillez corriger les erreurs avant de continuer", "invalid_card", fields=errors)
    return card


class CardPaymentFlow:
    """
    Enchaîne les appels passerelle pour une tentative:
      1) create_hold (idempotency_key = attempt_id, montant exact en centimes)
      2) tokenize_card (ou jeton d'un instrument enregistré)
      3) confirm_hold -> status 'succeeded' attendu
    """

    def __init__(self, gateway, currency: str = config.CURRENCY):
        self.gateway = gateway
        self.currency = currency

    def pay(
        self,
        *,
        attempt_id: str,
        amount: Any,
        card: Optional[CardDetails] = None,
        stored=None,
        metadata: Optional[Dict[str, str]] = None,
        user_id: Optional[str] = None,
    ) -> CardPaymentResult:
        """
        Paie `amount` (frais inclus) avec une carte saisie ou un instrument enregistré (`stored`).
        - ValidationError: aucune requête réseau n'a été faite
        - GatewayError: refus/indisponibilité/statut non abouti; le hold est abandonné
        - user_id: client payeur, inscrit dans la metadata du hold (contrôlé à la finalisation)
        """
        total = quantize(to_decimal(amount))
        if total <= 0:
            raise ValidationError("Le montant doit être supérieur à zéro", "invalid_amount", fields={"amount": "Montant invalide"})
        if stored is None:
            if card is None:
                raise ValidationError("Aucune carte fournie", "invalid_card", fields={"number": "Carte requise"})
            validate_card(card)

        hold = self.gateway.create_hold(
            amount_cents=to_minor_units(total),
            currency=self.currency,
            idempotency_key=attempt_id,
            metadata=self._metadata(attempt_id, user_id, metadata),
            customer=getattr(stored, "gateway_customer_ref", None),
        )
        hold_ref = hold.get("id") or ""

        try:
            if stored is not None:
                method_token = stored.gateway_method_token
                last4, brand = stored.last4, stored.brand
            else:
                token = self.gateway.tokenize_card(
                    number=card.clean_number,
                    exp_month=card.exp_month,
                    exp_year=card.exp_year,
                    cvc=card.cvv,
                    name=card.name.strip(),
                )
                method_token = token.get("id") or ""
                last4, brand = card.last4, detect_brand(card.clean_number)

            confirmed = self.gateway.confirm_hold(hold_ref, method_token)
        except GatewayError:
            self._abandon(hold_ref)
            raise

        status = confirmed.get("status") or ""
        if status != "succeeded":
            self._abandon(hold_ref)
            raise GatewayError(f"Paiement non abouti (status={status})", "payment_incomplete", status=status)

        logger.info("payments.card succeeded attempt_id=%s hold=%s", attempt_id, hold_ref)
        return CardPaymentResult(gateway_reference=hold_ref, last4=last4, brand=brand, amount=total)

    @staticmethod
    def _metadata(attempt_id: str, user_id: Optional[str], extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        meta = {"attempt_id": attempt_id, **(extra or {})}
        if user_id:
            meta["user_id"] = user_id
        return meta

    def _abandon(self, hold_ref: str) -> None:
        if not hold_ref:
            return
        try:
            self.gateway.cancel_hold(hold_ref)
        except GatewayError:
            logger.warning("payments.card cancel_hold failed hold=%s", hold_ref)
