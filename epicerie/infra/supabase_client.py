from typing import Optional
from fastapi import Request
from supabase import create_client, Client
from epicerie.config import SUPABASE_URL, SUPABASE_ANON, SUPABASE_SERVICE_KEY

_supabase: Optional[Client] = None
_service_supabase: Optional[Client] = None

def get_supabase() -> Client:
    global _supabase
    if _supabase is None:
        _supabase = create_client(SUPABASE_URL, SUPABASE_ANON)
    return _supabase

def get_service_supabase() -> Client:
    global _service_supabase
    if not SUPABASE_SERVICE_KEY:
        raise RuntimeError("SUPABASE_SERVICE_KEY manquant pour get_service_supabase()")
    if _service_supabase is None:
        _service_supabase = create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY)
    return _service_supabase

def get_db(request: Request) -> Client:
    """
    Dépendance FastAPI: client service-role posé sur app.state par le lifespan,
    sinon création paresseuse (scripts, workers sans lifespan).
    Les tables commandes/commissions/instruments sont écrites côté serveur uniquement.
    """
    client = getattr(request.app.state, "supabase", None)
    return client if client is not None else get_service_supabase()
