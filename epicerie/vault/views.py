from typing import Any, Dict

from fastapi import APIRouter, Depends

from epicerie.infra.stripe_gateway import StripeGateway, get_gateway
from epicerie.infra.supabase_client import get_db
from epicerie.utils.rate_limit import optional_rate_limit
from epicerie.utils.security import ensure_owner, require_user
from .models import ConfirmSetupRequest, SetupIntentRequest
from .repository import InstrumentRepository
from .service import VaultService

router = APIRouter(prefix="/payment-methods", tags=["Payment methods"])


def get_vault_service(db=Depends(get_db), gateway: StripeGateway = Depends(get_gateway)) -> VaultService:
    return VaultService(InstrumentRepository(db), gateway)


# module epicerie.vault.views
@router.post("/setup-intent", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def create_setup_intent(
    payload: SetupIntentRequest,
    user: Dict[str, Any] = Depends(require_user),
    service: VaultService = Depends(get_vault_service),
):
    """
    Première phase de l'enregistrement d'une carte.
    - Entrée JSON: {ownerId?, email, name}
    - Retour: {clientSecret, customerRef, setupRef} (le client confirme le SetupIntent avec clientSecret)
    """
    owner_id = payload.owner_id or str(user.get("id"))
    ensure_owner(user, owner_id)
    return service.start_setup(owner_id, payload.email, payload.name)

@router.post("/confirm", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def confirm_setup(
    payload: ConfirmSetupRequest,
    user: Dict[str, Any] = Depends(require_user),
    service: VaultService = Depends(get_vault_service),
):
    """
    Seconde phase: {ownerId?, setupRef, methodToken, makeDefault?} -> {storedInstrument}.
    - ownerId: même règle que /setup-intent (admin uniquement pour un autre client)
    """
    owner_id = payload.owner_id or str(user.get("id"))
    ensure_owner(user, owner_id)
    instrument = service.confirm_setup(owner_id, payload.setup_ref, payload.method_token, payload.make_default)
    return {"storedInstrument": instrument.to_json()}

@router.get("")
def list_payment_methods(
    user: Dict[str, Any] = Depends(require_user),
    service: VaultService = Depends(get_vault_service),
):
    return {"instruments": [i.to_json() for i in service.list_instruments(str(user.get("id")))]}

@router.post("/{instrument_id}/default")
def set_default_payment_method(
    instrument_id: str,
    user: Dict[str, Any] = Depends(require_user),
    service: VaultService = Depends(get_vault_service),
):
    instrument = service.set_default(str(user.get("id")), instrument_id)
    return {"storedInstrument": instrument.to_json()}

@router.post("/{instrument_id}/detach")
def detach_payment_method(
    instrument_id: str,
    user: Dict[str, Any] = Depends(require_user),
    service: VaultService = Depends(get_vault_service),
):
    """Détache la carte chez Stripe puis la désactive (jamais supprimée physiquement)."""
    service.remove_instrument(str(user.get("id")), instrument_id)
    return {"status": "ok"}
