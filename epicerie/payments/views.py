import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from epicerie import config
from epicerie.infra.stripe_gateway import StripeGateway, get_gateway
from epicerie.infra.supabase_client import get_db
from epicerie.orders.repository import OrderRepository
from epicerie.orders.service import OrderService
from epicerie.orders.views import get_order_repository, get_order_service
from epicerie.utils.rate_limit import optional_rate_limit
from epicerie.utils.security import ensure_owner, require_user
from . import fees
from . import service as payments_service
from .repository import ProofStorage

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["Payments"])


def get_proof_storage(db=Depends(get_db)) -> ProofStorage:
    return ProofStorage(db)


# module epicerie.payments.views
@router.get("/methods")
def list_methods(
    amount: str = Query(...),
    merchant_has_interac: bool = Query(False, alias="merchantHasInterac"),
):
    """
    Devis par méthode pour l'écran de sélection.
    - Paramètres: amount (sous-total + livraison), merchantHasInterac
    - Retour: {"methods": [{method, name, feeRate, fees, total, processingTime}, ...]}
    """
    return {"methods": fees.quote(amount, merchant_has_interac)}

@router.post("/holds", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def create_hold(
    payload: payments_service.HoldRequest,
    user: Dict[str, Any] = Depends(require_user),
    gateway: StripeGateway = Depends(get_gateway),
):
    """
    Crée le PaymentIntent d'une tentative carte; retour {holdRef, clientSecret, amount}.
    - metadata user_id = client du brouillon (contrôlé par POST /orders), admin exempté du contrôle de propriété
    """
    owner_id = payload.order_draft.customer_id if payload.order_draft is not None else str(user.get("id"))
    ensure_owner(user, owner_id)
    return payments_service.create_hold(gateway, owner_id, payload)

@router.post("/proofs", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def upload_proofs(
    files: List[UploadFile] = File(...),
    user: Dict[str, Any] = Depends(require_user),
    storage: ProofStorage = Depends(get_proof_storage),
):
    """
    Dépôt multipart des preuves de virement Interac.
    - Chaque fichier est validé individuellement (type, taille <= 5MB, non vide, 5 fichiers max)
    - Retour: {"accepted": [...], "rejected": [{name, reason, error}]}
    """
    batch = []
    for f in files:
        content = await f.read()
        batch.append((f.filename or "", f.content_type or "", content))
    result = await run_in_threadpool(
        payments_service.store_proofs, storage, str(user.get("id")), batch, config.PROOF_MAX_FILES, config.PROOF_MAX_BYTES
    )
    return JSONResponse(result)

@router.post("/webhook", include_in_schema=False)
async def webhook_stripe(
    request: Request,
    gateway: StripeGateway = Depends(get_gateway),
    order_service: OrderService = Depends(get_order_service),
    orders: OrderRepository = Depends(get_order_repository),
):
    """
    Webhook Stripe (PaymentIntent): consomme payment_intent.succeeded pour créer la commande.
    - Signature: gateway.parse_event (Stripe-Signature + STRIPE_WEBHOOK_SECRET)
    - Réponses: {"status": "ok", ...}, {"status": "ignored"} ou {"status": "rejected", "reason"} (rejet définitif, en 200)
    - Passerelle indisponible ou stockage en échec: 503, Stripe rejoue l'événement
    - Erreurs: 400 si signature/payload invalide
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        event = gateway.parse_event(payload, sig_header)
    except ValueError:
        logger.warning("payments.webhook invalid signature or payload")
        raise HTTPException(status_code=400, detail="Invalid Stripe webhook payload")

    result = await run_in_threadpool(payments_service.handle_event, event, order_service, orders)
    logger.info("payments.webhook type=%s result=%s", event.get("type"), result.get("status"))
    return JSONResponse(result)
