"""
ASGI entrypoint: expose `app` for process managers / deployments.

- En production, un process manager (ex: gunicorn/uvicorn-workers) importe `epicerie.asgi:app`.
- Toute la configuration FastAPI est centralisée dans epicerie.app_setup.factory.
"""

from epicerie.app import app
