"""
Adaptateur Stripe: centralise les appels à la passerelle de paiement.

- Aucune configuration globale (stripe.api_key n'est jamais modifié): la clé est passée à chaque appel.
- Instancié par le lifespan FastAPI, stocké sur app.state.gateway, injecté via Depends(get_gateway).
- Les erreurs du SDK sont traduites en GatewayError (reason stable pour les clients).
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import stripe
from fastapi import Request

from epicerie import config
from epicerie.errors import GatewayError

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> Dict[str, Any]:
    # StripeObject est dict-compatible
    return dict(obj) if obj is not None else {}


class StripeGateway:
    def __init__(self, secret_key: str, webhook_secret: str = "", api_version: Optional[str] = None):
        self._secret_key = secret_key or ""
        self._webhook_secret = webhook_secret or ""
        self._api_version = api_version or None
        self._closed = False

    @property
    def configured(self) -> bool:
        return bool(self._secret_key) and not self._closed

    def _opts(self, **extra: Any) -> Dict[str, Any]:
        if self._closed:
            raise GatewayError("Passerelle de paiement fermée", "gateway_unavailable")
        if not self._secret_key:
            raise GatewayError("STRIPE_SECRET_KEY manquant", "gateway_error")
        opts: Dict[str, Any] = {"api_key": self._secret_key}
        if self._api_version:
            opts["stripe_version"] = self._api_version
        opts.update({k: v for k, v in extra.items() if v is not None})
        return opts

    @contextmanager
    def _translate(self, op: str, ref: str = "") -> Iterator[None]:
        """
        Traduit les exceptions du SDK:
        - CardError -> card_declined (message Stripe conservé pour l'utilisateur)
        - APIConnectionError / RateLimitError -> gateway_unavailable (rejouable)
        - autres StripeError -> gateway_error
        """
        try:
            yield
        except GatewayError:
            raise
        except stripe.CardError as e:
            logger.info("stripe_gateway.%s declined ref=%s code=%s", op, ref, getattr(e, "code", None))
            raise GatewayError(getattr(e, "user_message", None) or "Carte refusée", "card_declined", code=getattr(e, "code", None))
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning("stripe_gateway.%s unavailable ref=%s err=%s", op, ref, e)
            raise GatewayError("Passerelle de paiement indisponible", "gateway_unavailable")
        except stripe.StripeError as e:
            logger.exception("stripe_gateway.%s failed ref=%s", op, ref)
            raise GatewayError(getattr(e, "user_message", None) or "Erreur de la passerelle de paiement", "gateway_error")

    # --- Holds (PaymentIntent) ---

    def create_hold(
        self,
        *,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
        customer: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Crée un PaymentIntent pour le montant exact (centimes).
        - idempotency_key: identifiant de la tentative; un rejeu renvoie le même hold.
        """
        with self._translate("create_hold", idempotency_key):
            intent = stripe.PaymentIntent.create(
                amount=int(amount_cents),
                currency=currency,
                metadata=metadata or {},
                payment_method_types=["card"],
                **self._opts(idempotency_key=idempotency_key, customer=customer, payment_method=payment_method),
            )
        return _as_dict(intent)

    def confirm_hold(self, hold_ref: str, payment_method: str) -> Dict[str, Any]:
        with self._translate("confirm_hold", hold_ref):
            intent = stripe.PaymentIntent.confirm(hold_ref, payment_method=payment_method, **self._opts())
        return _as_dict(intent)

    def retrieve_hold(self, hold_ref: str) -> Dict[str, Any]:
        with self._translate("retrieve_hold", hold_ref):
            intent = stripe.PaymentIntent.retrieve(hold_ref, **self._opts())
        return _as_dict(intent)

    def cancel_hold(self, hold_ref: str) -> Dict[str, Any]:
        with self._translate("cancel_hold", hold_ref):
            intent = stripe.PaymentIntent.cancel(hold_ref, **self._opts())
        return _as_dict(intent)

    # --- Clients et instruments enregistrés ---

    def create_customer(self, *, email: str, name: str, metadata: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        with self._translate("create_customer", email):
            customer = stripe.Customer.create(email=email, name=name, metadata=metadata or {}, **self._opts())
        return _as_dict(customer)

    def create_setup_intent(self, *, customer: str, metadata: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """SetupIntent: enregistre une carte sans débit (usage off_session)."""
        with self._translate("create_setup_intent", customer):
            intent = stripe.SetupIntent.create(
                customer=customer,
                payment_method_types=["card"],
                usage="off_session",
                metadata=metadata or {},
                **self._opts(),
            )
        return _as_dict(intent)

    def confirm_setup_intent(self, setup_ref: str, payment_method: str) -> Dict[str, Any]:
        with self._translate("confirm_setup_intent", setup_ref):
            intent = stripe.SetupIntent.confirm(setup_ref, payment_method=payment_method, **self._opts())
        return _as_dict(intent)

    def retrieve_setup_intent(self, setup_ref: str) -> Dict[str, Any]:
        with self._translate("retrieve_setup_intent", setup_ref):
            intent = stripe.SetupIntent.retrieve(setup_ref, **self._opts())
        return _as_dict(intent)

    def tokenize_card(self, *, number: str, exp_month: int, exp_year: int, cvc: str, name: str) -> Dict[str, Any]:
        """Convertit les données carte brutes en PaymentMethod réutilisable (pm_...)."""
        with self._translate("tokenize_card", number[-4:] if number else ""):
            method = stripe.PaymentMethod.create(
                type="card",
                card={"number": number, "exp_month": int(exp_month), "exp_year": int(exp_year), "cvc": cvc},
                billing_details={"name": name},
                **self._opts(),
            )
        return _as_dict(method)

    def retrieve_payment_method(self, method_token: str) -> Dict[str, Any]:
        with self._translate("retrieve_payment_method", method_token):
            method = stripe.PaymentMethod.retrieve(method_token, **self._opts())
        return _as_dict(method)

    def detach_payment_method(self, method_token: str) -> Dict[str, Any]:
        with self._translate("detach_payment_method", method_token):
            method = stripe.PaymentMethod.detach(method_token, **self._opts())
        return _as_dict(method)

    # --- Webhook ---

    def parse_event(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """
        Valide la signature (Stripe-Signature + STRIPE_WEBHOOK_SECRET) et retourne l'événement.
        - Soulève ValueError si la signature ou le payload est invalide.
        """
        try:
            event = stripe.Webhook.construct_event(payload, sig_header or "", self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise ValueError(f"Signature Stripe invalide: {e}")
        return _as_dict(event)

    def close(self) -> None:
        self._closed = True


def get_gateway(request: Request) -> StripeGateway:
    """Dépendance FastAPI: passerelle construite par le lifespan."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise GatewayError("Passerelle de paiement non initialisée", "gateway_unavailable")
    return gateway


def build_gateway() -> StripeGateway:
    return StripeGateway(config.STRIPE_SECRET_KEY, config.STRIPE_WEBHOOK_SECRET, config.STRIPE_API_VERSION)
