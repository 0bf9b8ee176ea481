"""
Taxonomie des erreurs du checkout.

Chaque erreur porte:
- reason: code machine stable (les clients branchent dessus, jamais sur le message)
- status_code: statut HTTP utilisé par le handler d'exceptions de l'API
- message: texte lisible destiné à l'utilisateur
- details: champs additionnels sérialisés dans la réponse JSON

Rendu HTTP commun: {"error": message, "reason": reason, **details}
(voir epicerie.app_setup.exceptions).
"""
from typing import Any, Dict, Optional


class CheckoutError(Exception):
    status_code = 400
    default_reason = "checkout_error"

    def __init__(self, message: str, reason: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "reason": self.reason, **self.details}


class ValidationError(CheckoutError):
    """
    Données client invalides (carte, expiration, CVV, fichier, montant).
    Récupérée localement: aucun appel réseau n'a été effectué.
    - fields: {nom_du_champ: message} pour l'affichage champ par champ
    """
    status_code = 422
    default_reason = "validation_error"

    def __init__(self, message: str, reason: Optional[str] = None, fields: Optional[Dict[str, str]] = None, **details: Any):
        if fields:
            details["fields"] = dict(fields)
        super().__init__(message, reason, **details)
        self.fields: Dict[str, str] = dict(fields or {})


class GatewayError(CheckoutError):
    """
    Refus, erreur réseau ou timeout côté passerelle de paiement.
    La tentative est abandonnée: une nouvelle tentative (nouveau hold) est requise.
    """
    status_code = 502
    default_reason = "gateway_error"

    def __init__(self, message: str, reason: Optional[str] = None, **details: Any):
        super().__init__(message, reason, **details)
        if self.reason == "gateway_unavailable":
            self.status_code = 503

    @property
    def retryable(self) -> bool:
        return self.reason == "gateway_unavailable"


class PaymentNotConfirmed(CheckoutError):
    """Le hold n'est pas 'succeeded' côté passerelle: aucune commande créée."""
    status_code = 402
    default_reason = "payment_not_confirmed"


class InvalidBreakdown(CheckoutError):
    """Répartition marchand/livreur/plateforme incohérente: rejet définitif, jamais rejoué."""
    status_code = 422
    default_reason = "invalid_breakdown"


class NotFound(CheckoutError):
    status_code = 404
    default_reason = "not_found"


class Forbidden(CheckoutError):
    status_code = 403
    default_reason = "forbidden"


class InvalidTransition(CheckoutError):
    """Transition refusée par la machine à états du checkout."""
    status_code = 409
    default_reason = "invalid_transition"


class CheckoutBusy(CheckoutError):
    """Un appel passerelle/upload/soumission est déjà en cours pour cette session."""
    status_code = 409
    default_reason = "checkout_busy"


class ReferenceConflict(CheckoutError):
    """La paymentReference est déjà liée à un autre client ou à une autre méthode de paiement."""
    status_code = 409
    default_reason = "reference_conflict"


class StorageError(CheckoutError):
    """Lecture/écriture Supabase impossible: aucune commande n'est supposée créée."""
    status_code = 503
    default_reason = "storage_error"


_BY_REASON = {
    "validation_error": ValidationError,
    "invalid_amount": ValidationError,
    "invalid_card": ValidationError,
    "unsupported_type": ValidationError,
    "file_too_large": ValidationError,
    "empty_file": ValidationError,
    "too_many_files": ValidationError,
    "no_proof_files": ValidationError,
    "unsupported_method": ValidationError,
    "invalid_reference": ValidationError,
    "gateway_error": GatewayError,
    "gateway_unavailable": GatewayError,
    "card_declined": GatewayError,
    "payment_incomplete": GatewayError,
    "payment_not_confirmed": PaymentNotConfirmed,
    "setup_not_confirmed": PaymentNotConfirmed,
    "invalid_breakdown": InvalidBreakdown,
    "amount_mismatch": InvalidBreakdown,
    "not_found": NotFound,
    "forbidden": Forbidden,
    "reference_conflict": ReferenceConflict,
    "storage_error": StorageError,
    "invalid_transition": InvalidTransition,
    "checkout_busy": CheckoutBusy,
}


def error_from_payload(payload: Dict[str, Any], status_code: int = 400) -> CheckoutError:
    """
    Reconstruit l'erreur typée à partir d'une réponse {error, reason, ...}.
    - Utilisé par le client HTTP du checkout: le typage repose sur 'reason' uniquement.
    - Reason inconnue: CheckoutError générique avec le statut HTTP reçu.
    """
    payload = dict(payload or {})
    message = str(payload.pop("error", "") or payload.pop("detail", "") or "Erreur inconnue")
    reason = str(payload.pop("reason", "") or "checkout_error")
    cls = _BY_REASON.get(reason)
    if cls is None:
        err = CheckoutError(message, reason, **payload)
        err.status_code = status_code
        return err
    if cls is ValidationError:
        fields = payload.pop("fields", None)
        return ValidationError(message, reason, fields=fields, **payload)
    return cls(message, reason, **payload)
