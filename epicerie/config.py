# epicerie.config
from decimal import Decimal
from pathlib import Path
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=False)

"""
Configuration centrale du backend de paiement.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les secrets/URLs (Supabase, Stripe), CORS/hosts
- Expose les paramètres métier du checkout (frais, commission, preuves Interac, retries passerelle)
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _int_env(name: str, default: int) -> int:
    try:
        return int(_clean_env(os.getenv(name) or "") or default)
    except ValueError:
        return default

def _float_env(name: str, default: float) -> float:
    try:
        return float(_clean_env(os.getenv(name) or "") or default)
    except ValueError:
        return default

def _decimal_env(name: str, default: str) -> Decimal:
    raw = _clean_env(os.getenv(name) or "") or default
    try:
        return Decimal(raw)
    except Exception:
        return Decimal(default)

# Supabase: URL et clés (anon/service)
# - SUPABASE_URL peut parfois être sans schéma: on préfixe en https:// si nécessaire
SUPABASE_URL = _clean_env(os.getenv("SUPABASE_URL") or "")
SUPABASE_ANON = _clean_env(os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_KEY") or "")
SUPABASE_SERVICE_KEY = _clean_env(os.getenv("SUPABASE_SERVICE_KEY") or "")

if SUPABASE_URL and not SUPABASE_URL.startswith("http"):
    SUPABASE_URL = "https://" + SUPABASE_URL
if SUPABASE_URL.endswith("/"):
    SUPABASE_URL = SUPABASE_URL.rstrip("/")

COOKIE_SECURE = (os.getenv("COOKIE_SECURE", "false").lower() == "true")

# CORS (dev)
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h.strip()]

# Stripe: clé secrète et secret webhook
STRIPE_SECRET_KEY = _clean_env(os.getenv("STRIPE_SECRET_KEY") or "")
STRIPE_WEBHOOK_SECRET = _clean_env(os.getenv("STRIPE_WEBHOOK_SECRET") or "")
STRIPE_API_VERSION = _clean_env(os.getenv("STRIPE_API_VERSION") or "")

# Devise des paiements (Stripe attend le code en minuscules)
CURRENCY = (_clean_env(os.getenv("CURRENCY") or "") or "cad").lower()

# Frais de traitement carte (3% par défaut), Interac sans frais
CARD_FEE_RATE = _decimal_env("CARD_FEE_RATE", "0.03")

# Pourcentage prélevé par la plateforme sur les frais de livraison
DELIVERY_COMMISSION_PERCENT = _decimal_env("DELIVERY_COMMISSION_PERCENT", "20")

# Preuves de virement Interac
PROOF_MAX_BYTES = _int_env("PROOF_MAX_BYTES", 5 * 1024 * 1024)
PROOF_MAX_FILES = _int_env("PROOF_MAX_FILES", 5)
PROOF_BUCKET = _clean_env(os.getenv("PROOF_BUCKET") or "") or "payment-proofs"

# Relecture du hold côté passerelle: tentatives et délai de base (secondes)
GATEWAY_RETRY_ATTEMPTS = _int_env("GATEWAY_RETRY_ATTEMPTS", 3)
GATEWAY_RETRY_BASE_DELAY = _float_env("GATEWAY_RETRY_BASE_DELAY", 0.25)
