"""
Cas d'usage du coffre: enregistrement (SetupIntent), liste, défaut, suppression logique.

Invariant: au plus un instrument actif is_default=true par client.
- Premier instrument actif -> défaut ; ajouts suivants -> défaut inchangé sauf make_default
- Suppression -> is_active=false, is_default=false ; pas de promotion automatique
"""
import logging
from typing import Any, Dict, List, Optional

from epicerie.errors import NotFound, PaymentNotConfirmed, ValidationError
from epicerie.payments.card import CardDetails, validate_card
from .models import StoredInstrument
from .repository import InstrumentRepository

logger = logging.getLogger(__name__)


class VaultService:
    def __init__(self, repository: InstrumentRepository, gateway):
        self.repository = repository
        self.gateway = gateway

    def ensure_customer(self, owner_id: str, email: str, name: str) -> str:
        """
        Réutilise le premier client passerelle connu, sinon en crée un.
        Lecture puis création: un doublon rare sous concurrence est toléré.
        """
        ref = self.repository.first_customer_ref(owner_id)
        if ref:
            return ref
        customer = self.gateway.create_customer(email=email, name=name, metadata={"user_id": owner_id})
        logger.info("vault.ensure_customer created owner=%s customer=%s", owner_id, customer.get("id"))
        return customer.get("id") or ""

    def start_setup(self, owner_id: str, email: str, name: str) -> Dict[str, Any]:
        customer_ref = self.ensure_customer(owner_id, email, name)
        intent = self.gateway.create_setup_intent(customer=customer_ref, metadata={"user_id": owner_id})
        return {
            "clientSecret": intent.get("client_secret"),
            "customerRef": customer_ref,
            "setupRef": intent.get("id"),
        }

    def confirm_setup(self, owner_id: str, setup_ref: str, method_token: str, make_default: bool = False) -> StoredInstrument:
        """
        Finalise l'enregistrement après confirmation du SetupIntent côté client.
        - SetupIntent 'succeeded' requis (sinon PaymentNotConfirmed setup_not_confirmed)
        - methodToken doit être le PaymentMethod attaché au SetupIntent (sinon ValidationError invalid_card)
        - PaymentMethod de type 'card' requis (sinon ValidationError invalid_card)
        - Rejouable: un jeton déjà enregistré et actif est renvoyé tel quel
        """
        intent = self.gateway.retrieve_setup_intent(setup_ref)
        intent_owner = (intent.get("metadata") or {}).get("user_id")
        if intent_owner and intent_owner != owner_id:
            raise NotFound("Enregistrement introuvable")
        if (intent.get("status") or "") != "succeeded":
            raise PaymentNotConfirmed("Enregistrement de la carte non abouti", "setup_not_confirmed", status=intent.get("status"))
        attached = intent.get("payment_method")
        if isinstance(attached, dict):
            attached = attached.get("id")
        if attached != method_token:
            logger.warning("vault.confirm_setup token mismatch owner=%s setup=%s", owner_id, setup_ref)
            raise ValidationError(
                "La carte ne correspond pas à l'enregistrement", "invalid_card", fields={"methodToken": "Carte différente"}
            )

        existing = self.repository.find_active_by_token(owner_id, method_token)
        if existing:
            return StoredInstrument.from_row(existing)

        method = self.gateway.retrieve_payment_method(method_token)
        card = method.get("card") or {}
        if method.get("type") != "card" or not card:
            raise ValidationError("Méthode de paiement invalide", "invalid_card", fields={"methodToken": "Carte requise"})

        active = self.repository.list_active(owner_id)
        is_default = not active or make_default
        if is_default and active:
            self.repository.clear_default(owner_id)

        row = self.repository.insert({
            "user_id": owner_id,
            "stripe_payment_method_id": method.get("id") or method_token,
            "stripe_customer_id": intent.get("customer") or "",
            "type": "card",
            "brand": card.get("brand") or "",
            "last4": card.get("last4") or "",
            "expiry_month": card.get("exp_month"),
            "expiry_year": card.get("exp_year"),
            "is_default": is_default,
            "is_active": True,
            "metadata": {"setup_intent_id": setup_ref},
        })
        logger.info("vault.confirm_setup stored owner=%s id=%s default=%s", owner_id, row.get("id"), is_default)
        return StoredInstrument.from_row(row)

    def add_instrument(self, owner_id: str, email: str, name: str, card: CardDetails, make_default: bool = False) -> StoredInstrument:
        """Enregistrement complet côté serveur: validation, client, SetupIntent, tokenisation, confirmation."""
        validate_card(card)
        customer_ref = self.ensure_customer(owner_id, email, name)
        intent = self.gateway.create_setup_intent(customer=customer_ref, metadata={"user_id": owner_id})
        token = self.gateway.tokenize_card(
            number=card.clean_number,
            exp_month=card.exp_month,
            exp_year=card.exp_year,
            cvc=card.cvv,
            name=card.name.strip(),
        )
        self.gateway.confirm_setup_intent(intent.get("id") or "", token.get("id") or "")
        return self.confirm_setup(owner_id, intent.get("id") or "", token.get("id") or "", make_default)

    def list_instruments(self, owner_id: str) -> List[StoredInstrument]:
        return [StoredInstrument.from_row(r) for r in self.repository.list_active(owner_id)]

    def _owned_active(self, owner_id: str, instrument_id: str) -> Dict[str, Any]:
        row: Optional[Dict[str, Any]] = self.repository.get(instrument_id)
        # Instrument d'un autre client: même réponse qu'un instrument inexistant
        if not row or str(row.get("user_id")) != str(owner_id) or not row.get("is_active"):
            raise NotFound("Moyen de paiement introuvable")
        return row

    def set_default(self, owner_id: str, instrument_id: str) -> StoredInstrument:
        row = self._owned_active(owner_id, instrument_id)
        if not row.get("is_default"):
            self.repository.clear_default(owner_id)
            self.repository.mark_default(instrument_id)
        row = dict(row, is_default=True)
        return StoredInstrument.from_row(row)

    def remove_instrument(self, owner_id: str, instrument_id: str) -> None:
        row = self._owned_active(owner_id, instrument_id)
        self.gateway.detach_payment_method(row.get("stripe_payment_method_id") or "")
        self.repository.deactivate(instrument_id)
        logger.info("vault.remove_instrument owner=%s id=%s", owner_id, instrument_id)
