"""
Gestionnaires d'exceptions: une seule forme de réponse d'erreur.

    {"error": <message>, "reason": <code>, ...details}

- CheckoutError (et sous-classes): status_code et reason portés par l'exception
- RequestValidationError (FastAPI/pydantic): 422, reason=validation_error, fields par champ
- HTTPException: status conservé, reason=http_<status>
"""
import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from epicerie.errors import CheckoutError, InvalidBreakdown

logger = logging.getLogger(__name__)


def _field_name(loc) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path")]
    return ".".join(parts) or "body"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        if isinstance(exc, InvalidBreakdown):
            logger.error("checkout error path=%s reason=%s msg=%s", request.url.path, exc.reason, exc.message)
        else:
            logger.info("checkout error path=%s reason=%s status=%s", request.url.path, exc.reason, exc.status_code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = {_field_name(e.get("loc", ())): e.get("msg", "invalide") for e in exc.errors()}
        return JSONResponse(
            status_code=422,
            content={"error": "Requête invalide", "reason": "validation_error", "fields": fields},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail), "reason": f"http_{exc.status_code}"},
            headers=getattr(exc, "headers", None),
        )
