"""
Orchestrateur du checkout: machine à états explicite pour une commande.

- Une seule opération réseau à la fois (CheckoutBusy sinon).
- Submitted déclenche exactement un appel de finalisation, jamais rejoué.
- Après un échec de soumission, restart() revient à MethodSelection; le choix
  de méthode suivant crée une nouvelle tentative (nouveau hold / nouvelle preuve).
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Type, TypeVar

from epicerie.errors import CheckoutBusy, CheckoutError, GatewayError, InvalidTransition, ValidationError
from epicerie.orders.models import OrderDraft
from epicerie.payments import fees
from epicerie.payments.card import CardDetails, CardPaymentFlow
from epicerie.payments.interac import ProofCollector, TransferInstructions
from epicerie.utils.money import format_amount
from .client import OrdersClient
from .states import (
    CardPayment,
    CheckoutState,
    ManualTransfer,
    MethodSelection,
    PaymentAttempt,
    ProofUpload,
    Submitted,
    new_attempt_id,
)

logger = logging.getLogger(__name__)

S = TypeVar("S")


class CheckoutSession:
    def __init__(
        self,
        draft: OrderDraft,
        orders: OrdersClient,
        card_flow: Optional[CardPaymentFlow] = None,
        merchant: Optional[Dict[str, Any]] = None,
        commission_percent: Optional[Any] = None,
    ):
        """
        draft: brouillon de commande (sous-total et frais de livraison hors frais de traitement)
        merchant: {interac_enabled, interac_email, interac_phone, business_name}
        """
        self.draft = draft
        self.orders = orders
        self.card_flow = card_flow
        self.merchant = merchant or {}
        self.commission_percent = commission_percent
        self._lock = threading.Lock()
        self._state: CheckoutState = MethodSelection(amount=draft.subtotal + draft.delivery_fee, quotes=self._state_quotes())
        self._collector: Optional[ProofCollector] = None

    @property
    def state(self) -> CheckoutState:
        return self._state

    @property
    def merchant_has_interac(self) -> bool:
        return bool(self.merchant.get("interac_enabled"))

    # --- garde-fous ---

    def _expect(self, *kinds: Type[S]) -> S:
        if not isinstance(self._state, kinds):
            names = "|".join(k.__name__ for k in kinds)
            raise InvalidTransition(
                f"Transition impossible depuis {type(self._state).__name__} (attendu: {names})",
                state=type(self._state).__name__,
            )
        return self._state

    @contextmanager
    def _in_flight(self) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise CheckoutBusy("Une opération est déjà en cours")
        try:
            yield
        finally:
            self._lock.release()

    # --- transitions ---

    def choose_method(self, method_id: str) -> CheckoutState:
        """MethodSelection -> CardPayment | ManualTransfer, avec une nouvelle tentative."""
        with self._in_flight():
            self._expect(MethodSelection)
            method = fees.get_method(method_id)
            if method.is_manual and not self.merchant_has_interac:
                raise ValidationError("Interac n'est pas proposé par ce marchand", "unsupported_method", fields={"method": method.id})

            split = fees.compute_breakdown(self.draft.subtotal, self.draft.delivery_fee, method, self.commission_percent)
            attempt = PaymentAttempt(
                attempt_id=new_attempt_id(),
                method=method,
                amount=split["total_amount"],
                breakdown={k: v for k, v in split.items() if k != "total_amount"},
            )
            if method.is_manual:
                instructions = TransferInstructions.for_merchant(self.merchant, attempt.amount, attempt.attempt_id)
                self._state = ManualTransfer(attempt=attempt, instructions=instructions)
            else:
                self._state = CardPayment(attempt=attempt)
            logger.info("checkout.choose_method method=%s attempt=%s amount=%s", method.id, attempt.attempt_id, attempt.amount)
            return self._state

    def back(self) -> CheckoutState:
        """Retour à la sélection: la tentative en cours est abandonnée."""
        with self._in_flight():
            self._expect(CardPayment, ManualTransfer, ProofUpload)
            self._collector = None
            self._state = MethodSelection(amount=self.draft.subtotal + self.draft.delivery_fee, quotes=self._state_quotes())
            return self._state

    def restart(self) -> CheckoutState:
        """Après un échec de soumission uniquement."""
        with self._in_flight():
            state = self._expect(Submitted)
            if state.succeeded:
                raise InvalidTransition("Commande déjà créée", state="Submitted")
            self._collector = None
            self._state = MethodSelection(amount=self.draft.subtotal + self.draft.delivery_fee, quotes=self._state_quotes())
            return self._state

    def _state_quotes(self):
        return tuple(fees.quote(self.draft.subtotal + self.draft.delivery_fee, self.merchant_has_interac))

    # --- carte ---

    def pay_card(self, card: Optional[CardDetails] = None, stored=None) -> Submitted:
        """
        CardPayment -> Submitted.
        - ValidationError: état inchangé (aucun appel réseau)
        - GatewayError: reste en CardPayment avec une tentative renouvelée (nouveau hold au prochain essai)
        """
        with self._in_flight():
            state = self._expect(CardPayment)
            if self.card_flow is None:
                raise GatewayError("Paiement carte non configuré", "gateway_unavailable")
            attempt = state.attempt
            try:
                result = self.card_flow.pay(
                    attempt_id=attempt.attempt_id,
                    amount=attempt.amount,
                    card=card,
                    stored=stored,
                    user_id=self.draft.customer_id,
                )
            except GatewayError as e:
                self._state = CardPayment(attempt=attempt.renewed(), last_error=e)
                raise
            paid = PaymentAttempt(
                attempt_id=attempt.attempt_id,
                method=attempt.method,
                amount=attempt.amount,
                breakdown=attempt.breakdown,
                gateway_reference=result.gateway_reference,
            )
            return self._submit(paid)

    # --- Interac ---

    def start_proof_upload(self) -> ProofUpload:
        with self._in_flight():
            state = self._expect(ManualTransfer)
            self._collector = ProofCollector(state.instructions)
            self._state = ProofUpload(attempt=state.attempt, instructions=state.instructions)
            return self._state

    def add_proof(self, name: str, size: int, mime_type: str, content: Optional[bytes] = None):
        """
        Ajoute une preuve (validée localement avant tout envoi).
        - content fourni: le fichier est déposé via POST /payments/proofs et sa storageRef conservée
        - un rejet n'affecte pas les fichiers déjà acceptés
        """
        with self._in_flight():
            state = self._expect(ProofUpload)
            self._collector.check(name, size, mime_type)
            storage_ref = None
            if content is not None:
                storage_ref = self._upload(name, mime_type, content)
            proof = self._collector.add(name, size, mime_type, storage_ref)
            self._state = ProofUpload(attempt=state.attempt, instructions=state.instructions, files=self._collector.files)
            return proof

    def remove_proof(self, name: str) -> bool:
        with self._in_flight():
            state = self._expect(ProofUpload)
            removed = self._collector.remove(name)
            self._state = ProofUpload(attempt=state.attempt, instructions=state.instructions, files=self._collector.files)
            return removed

    def submit_proof(self) -> Submitted:
        """ProofUpload -> Submitted (commande en pending_verification)."""
        with self._in_flight():
            state = self._expect(ProofUpload)
            proof = self._collector.submit()
            attempt = PaymentAttempt(
                attempt_id=state.attempt.attempt_id,
                method=state.attempt.method,
                amount=state.attempt.amount,
                breakdown=state.attempt.breakdown,
                proof_reference=proof.reference,
            )
            return self._submit(attempt, proof=proof)

    def _upload(self, name: str, mime_type: str, content: bytes) -> Optional[str]:
        result = self.orders.upload_proofs([(name, mime_type, content)])
        rejected = result.get("rejected") or []
        if rejected:
            r = rejected[0]
            raise ValidationError(r.get("error") or "Fichier refusé", r.get("reason") or "validation_error", fields={"file": name})
        accepted = result.get("accepted") or []
        return accepted[0].get("storageRef") if accepted else None

    # --- soumission ---

    def _submit(self, attempt: PaymentAttempt, proof=None) -> Submitted:
        draft = self.draft.model_copy(update={"total_amount": attempt.amount})
        breakdown = {
            "merchantAmount": format_amount(attempt.breakdown["merchant_amount"]),
            "driverAmount": format_amount(attempt.breakdown["driver_amount"]),
            "platformAmount": format_amount(attempt.breakdown["platform_amount"]),
        }
        try:
            body = self.orders.finalize(
                payment_reference=attempt.payment_reference or "",
                method=attempt.method.id,
                breakdown=breakdown,
                order_draft=draft.to_json(),
                proof=proof.to_payload() if proof is not None else None,
            )
        except CheckoutError as e:
            logger.warning("checkout.submit failed attempt=%s reason=%s", attempt.attempt_id, e.reason)
            self._state = Submitted(attempt=attempt, proof=proof, error=e)
            raise
        self._state = Submitted(attempt=attempt, order=body.get("order"), created=bool(body.get("created")), proof=proof)
        logger.info("checkout.submit ok attempt=%s ref=%s", attempt.attempt_id, attempt.payment_reference)
        return self._state
