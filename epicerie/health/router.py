from fastapi import APIRouter, Request
from epicerie.utils.rate_limit import rate_limit_health_info

router = APIRouter(prefix="/health", tags=["Health"])

@router.get("")
def health_root(request: Request):
    gateway = getattr(request.app.state, "gateway", None)
    return {"ok": True, "gateway": bool(gateway and gateway.configured)}

@router.get("/rate-limit")
def health_rate_limit(request: Request):
    return rate_limit_health_info(request)
