"""
États du checkout (union étiquetée de dataclasses figées).

    MethodSelection -> CardPayment | ManualTransfer
    ManualTransfer  -> ProofUpload
    CardPayment     -> Submitted      (après paiement carte réussi)
    ProofUpload     -> Submitted
    CardPayment | ManualTransfer | ProofUpload -> MethodSelection   (retour, tentative abandonnée)
    Submitted (échec) -> MethodSelection                             (restart, nouvelle tentative)
"""
import uuid
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

from epicerie.errors import CheckoutError
from epicerie.payments.fees import PaymentMethod
from epicerie.payments.interac import ProofFile, ProofOfTransfer, TransferInstructions


def new_attempt_id() -> str:
    return f"att_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class PaymentAttempt:
    attempt_id: str
    method: PaymentMethod
    amount: Decimal
    breakdown: Dict[str, Decimal] = field(default_factory=dict)
    gateway_reference: Optional[str] = None
    proof_reference: Optional[str] = None

    @property
    def payment_reference(self) -> Optional[str]:
        return self.gateway_reference or self.proof_reference

    def renewed(self) -> "PaymentAttempt":
        """Nouvelle tentative (nouvel identifiant, donc nouveau hold) pour la même méthode."""
        return replace(self, attempt_id=new_attempt_id(), gateway_reference=None, proof_reference=None)


@dataclass(frozen=True)
class MethodSelection:
    amount: Decimal
    quotes: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class CardPayment:
    attempt: PaymentAttempt
    last_error: Optional[CheckoutError] = None


@dataclass(frozen=True)
class ManualTransfer:
    attempt: PaymentAttempt
    instructions: TransferInstructions


@dataclass(frozen=True)
class ProofUpload:
    attempt: PaymentAttempt
    instructions: TransferInstructions
    files: Tuple[ProofFile, ...] = ()


@dataclass(frozen=True)
class Submitted:
    attempt: PaymentAttempt
    order: Optional[Dict[str, Any]] = None
    created: bool = False
    proof: Optional[ProofOfTransfer] = None
    error: Optional[CheckoutError] = None

    @property
    def succeeded(self) -> bool:
        return self.order is not None and self.error is None


CheckoutState = Union[MethodSelection, CardPayment, ManualTransfer, ProofUpload, Submitted]
