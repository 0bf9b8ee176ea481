import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from epicerie.errors import NotFound
from epicerie.infra.stripe_gateway import StripeGateway, get_gateway
from epicerie.infra.supabase_client import get_db
from epicerie.utils.rate_limit import optional_rate_limit
from epicerie.utils.security import ensure_owner, require_user
from .models import FinalizeOrderRequest
from .repository import OrderRepository
from .service import OrderService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders", tags=["Orders"])


def get_order_repository(db=Depends(get_db)) -> OrderRepository:
    return OrderRepository(db)

def get_order_service(
    repository: OrderRepository = Depends(get_order_repository),
    gateway: StripeGateway = Depends(get_gateway),
) -> OrderService:
    return OrderService(repository, gateway)


# module epicerie.orders.views
@router.post("", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def finalize_order(
    payload: FinalizeOrderRequest,
    user: Dict[str, Any] = Depends(require_user),
    service: OrderService = Depends(get_order_service),
):
    """
    Finalise une commande payée (idempotent par paymentReference).
    - Entrée JSON: {paymentReference, method, breakdown, orderDraft, proof?}
    - Sécurité: require_user + propriétaire de la commande (admin exempté) + rate limit (10 req / 60s)
    - Réponses: 201 {order, created: true} | 200 {order, created: false} (déjà créée)
    - Erreurs: {error, reason} (402 paiement non confirmé, 422 répartition, 503 passerelle indisponible)
    """
    ensure_owner(user, payload.order_draft.customer_id)
    order, created = service.finalize(payload)
    return JSONResponse(
        status_code=201 if created else 200,
        content={"order": order.to_json(), "created": created},
    )

@router.get("/by-reference/{payment_reference}")
def get_order_by_reference(
    payment_reference: str,
    user: Dict[str, Any] = Depends(require_user),
    service: OrderService = Depends(get_order_service),
):
    order = service.get_by_reference(payment_reference)
    if order is None:
        raise NotFound("Commande introuvable")
    ensure_owner(user, order.customer_id)
    return {"order": order.to_json()}
