import logging
from fastapi import Request, HTTPException, Depends
from typing import Optional, Dict, Any

import epicerie.infra.supabase_client as supabase_client
from epicerie.errors import Forbidden

logger = logging.getLogger(__name__)

COOKIE_NAME = "sb_access"
ROLES = ("admin", "merchant", "driver", "customer")

def determine_role(metadata: Dict[str, Any] | None) -> str:
    role_lower = str((metadata or {}).get("role", "")).lower()
    return role_lower if role_lower in ROLES else "customer"

def _token_from_request(request: Request) -> Optional[str]:
    # Hybride: priorité au Bearer, fallback cookie
    token = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
    if not token:
        token = request.cookies.get(COOKIE_NAME)
    return token or None

def get_user_from_token(access_token: str) -> Dict[str, Any]:
    """
    Normalise l'utilisateur issu de supabase.auth.get_user(access_token):
    - Retourne {id, email, metadata, role, token}
    """
    res = supabase_client.get_supabase().auth.get_user(access_token)
    user = getattr(res, "user", None) or {}
    if not isinstance(user, dict):
        user = {
            "id": getattr(user, "id", None),
            "email": getattr(user, "email", None),
            "user_metadata": getattr(user, "user_metadata", None),
        }
    metadata = user.get("user_metadata") or {}
    return {
        "id": user.get("id"),
        "email": user.get("email"),
        "metadata": metadata,
        "role": determine_role(metadata),
        "token": access_token,
    }

def get_current_user(request: Request) -> Dict[str, Any]:
    token = _token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Non authentifié")
    try:
        user = get_user_from_token(token)
    except Exception:
        logger.info("security.get_current_user token rejected")
        raise HTTPException(status_code=401, detail="Session expirée, veuillez vous connecter")
    if not user.get("id"):
        raise HTTPException(status_code=401, detail="Session expirée, veuillez vous connecter")
    return user

def require_user(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    return user

def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Accès interdit")
    return user

def ensure_owner(user: Dict[str, Any], owner_id: Optional[str]) -> None:
    """
    Un utilisateur n'agit que pour lui-même (commandes, instruments, relevés).
    - Le rôle admin contourne la vérification.
    """
    if user.get("role") == "admin":
        return
    if not owner_id or str(owner_id) != str(user.get("id") or ""):
        raise Forbidden("Action non autorisée pour cet utilisateur")
