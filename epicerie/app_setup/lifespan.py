"""
Lifespan FastAPI: initialisation/arrêt des ressources partagées.
- Passerelle Stripe (app.state.gateway), construite avec sa clé, fermée à l'arrêt.
- Client Supabase service-role (app.state.supabase) si la configuration est présente.
- Initialise FastAPILimiter (Redis) avec options de test (fakeredis).
- Variables d'environnement supportées:
  - DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS=1: désactive complètement (tests)
  - USE_FAKE_REDIS_FOR_TESTS=1: utilise fakeredis (tests)
  - LOCAL_RATE_LIMIT_FALLBACK=1: active un fallback local si l'init échoue
"""
import os
import logging
import redis.asyncio as aioredis
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi_limiter import FastAPILimiter

from epicerie import config
from epicerie.infra import supabase_client
from epicerie.infra.stripe_gateway import build_gateway

logger = logging.getLogger("uvicorn.error")


async def _init_rate_limit(app: FastAPI) -> None:
    """
    Configure le rate limiting et gère les fallbacks.
    - En cas d'échec de Redis et sans fallback, le rate limiting est désactivé proprement.
    """
    if os.getenv("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS") == "1":
        app.state.rate_limit_enabled = False
        logger.info("Rate limiting disabled by DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS")
        return
    try:
        if os.getenv("USE_FAKE_REDIS_FOR_TESTS") == "1":
            from fakeredis.aioredis import FakeRedis  # tests only
            r = FakeRedis(decode_responses=True)
        else:
            redis_url = os.getenv("RATE_LIMIT_REDIS_URL", "redis://127.0.0.1:6379/0")
            r = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        await FastAPILimiter.init(r)
        app.state.rate_limit_enabled = True
        logger.info("Rate limiting enabled")
    except Exception as e:
        if os.getenv("LOCAL_RATE_LIMIT_FALLBACK") == "1":
            app.state.rate_limit_enabled = True
            logger.warning("Rate limiting falling back to local in-memory due to init error: %s", e)
        else:
            app.state.rate_limit_enabled = False
            logger.warning("Rate limiting disabled due to init error: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "gateway", None) is None:
        app.state.gateway = build_gateway()
    if not app.state.gateway.configured:
        logger.warning("STRIPE_SECRET_KEY absent: les paiements carte échoueront (gateway_error)")

    if getattr(app.state, "supabase", None) is None and config.SUPABASE_URL and config.SUPABASE_SERVICE_KEY:
        app.state.supabase = supabase_client.get_service_supabase()

    await _init_rate_limit(app)
    try:
        yield
    finally:
        app.state.gateway.close()
        app.state.gateway = None
        if getattr(app.state, "rate_limit_enabled", False) and FastAPILimiter.redis is not None:
            await FastAPILimiter.close()
