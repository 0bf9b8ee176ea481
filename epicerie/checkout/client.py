"""
Client HTTP du service de finalisation (POST /orders, dépôt des preuves).

Les réponses d'erreur {error, reason, ...} sont reconverties en erreurs typées
(epicerie.errors.error_from_payload): l'appelant branche sur la classe ou sur reason.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from epicerie.errors import CheckoutError, error_from_payload

logger = logging.getLogger(__name__)


class OrdersClient:
    def __init__(self, base_url: str = "", token: Optional[str] = None, http: Optional[httpx.Client] = None, timeout: float = 15.0):
        # http: client injecté (ex: fastapi.testclient.TestClient, qui hérite de httpx.Client)
        self._owns_http = http is None
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self.token = token

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _request(self, method: str, url: str, **kwargs) -> Tuple[int, Dict[str, Any]]:
        try:
            resp = self.http.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.warning("checkout.client %s %s transport error: %s", method, url, e)
            err = CheckoutError("Service de commandes injoignable", "service_unavailable")
            err.status_code = 503
            raise err
        try:
            body = resp.json()
        except ValueError:
            body = {"error": resp.text or f"HTTP {resp.status_code}", "reason": f"http_{resp.status_code}"}
        if resp.status_code >= 400:
            raise error_from_payload(body if isinstance(body, dict) else {}, resp.status_code)
        return resp.status_code, body

    def finalize(
        self,
        *,
        payment_reference: str,
        method: str,
        breakdown: Dict[str, Any],
        order_draft: Dict[str, Any],
        proof: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """POST /orders -> {"order": {...}, "created": bool}."""
        payload: Dict[str, Any] = {
            "paymentReference": payment_reference,
            "method": method,
            "breakdown": breakdown,
            "orderDraft": order_draft,
        }
        if proof is not None:
            payload["proof"] = proof
        _, body = self._request("POST", "/orders", json=payload)
        return body

    def get_by_reference(self, payment_reference: str) -> Dict[str, Any]:
        _, body = self._request("GET", f"/orders/by-reference/{payment_reference}")
        return body.get("order") or {}

    def upload_proofs(self, files: List[Tuple[str, str, bytes]]) -> Dict[str, Any]:
        """POST /payments/proofs (multipart) -> {"accepted": [...], "rejected": [...]}."""
        multipart = [("files", (name, content, mime)) for name, mime, content in files]
        _, body = self._request("POST", "/payments/proofs", files=multipart)
        return body

    def close(self) -> None:
        if self._owns_http:
            self.http.close()
