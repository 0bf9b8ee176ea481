"""
Registre central des routers.
- Commandes: orders (finalisation idempotente)
- Paiements: payments (devis, holds, preuves, webhook), payment-methods (coffre)
- Relevés: ledger
- Health: health_router
"""
from fastapi import FastAPI
from epicerie.orders import views as orders_views
from epicerie.payments import views as payments_views
from epicerie.vault import views as vault_views
from epicerie.ledger import views as ledger_views
from epicerie.health.router import router as health_router

def register_routers(app: FastAPI) -> None:
    app.include_router(orders_views.router)
    app.include_router(payments_views.router)
    app.include_router(vault_views.router)
    app.include_router(ledger_views.router)
    # Health & monitoring
    app.include_router(health_router)
