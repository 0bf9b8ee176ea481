import json
import os
import threading
import uuid
from typing import Any, Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from unittest.mock import MagicMock

# Pas de Redis pendant les tests
os.environ.setdefault("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS", "1")

from epicerie.app import app as fastapi_app
from epicerie.errors import GatewayError, StorageError
from epicerie.infra.stripe_gateway import get_gateway
from epicerie.ledger.views import get_ledger_repository
from epicerie.orders.repository import DuplicateSubmission
from epicerie.orders.views import get_order_repository
from epicerie.payments.views import get_proof_storage
from epicerie.utils.security import require_user
from epicerie.vault.service import VaultService
from epicerie.vault.views import get_vault_service

# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "tests/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "tests/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)


# --- Faux adaptateurs en mémoire ---

class FakeGateway:
    """Passerelle Stripe simulée: holds, clients, SetupIntents, PaymentMethods."""

    def __init__(self):
        self.configured = True
        self.holds: Dict[str, Dict[str, Any]] = {}
        self.setup_intents: Dict[str, Dict[str, Any]] = {}
        self.methods: Dict[str, Dict[str, Any]] = {}
        self.customers: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.detached: List[str] = []
        self.calls: List[str] = []
        self.confirm_status = "succeeded"
        self._failures: Dict[str, List[Exception]] = {}
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def fail_next(self, op: str, *errors: Exception) -> None:
        self._failures.setdefault(op, []).extend(errors)

    def _call(self, op: str) -> None:
        self.calls.append(op)
        queue = self._failures.get(op)
        if queue:
            raise queue.pop(0)

    def add_hold(
        self, ref: str, amount_cents: int, status: str = "succeeded", currency: str = "cad", user_id: str = "test-user"
    ) -> Dict[str, Any]:
        self.holds[ref] = {
            "id": ref,
            "amount": amount_cents,
            "currency": currency,
            "status": status,
            "metadata": {"user_id": user_id} if user_id else {},
        }
        return self.holds[ref]

    def create_hold(self, *, amount_cents, currency, idempotency_key, metadata=None, customer=None, payment_method=None):
        self._call("create_hold")
        for hold in self.holds.values():
            if hold.get("idempotency_key") == idempotency_key:
                return dict(hold)
        ref = self._next("pi")
        self.holds[ref] = {
            "id": ref,
            "client_secret": f"{ref}_secret",
            "amount": amount_cents,
            "currency": currency,
            "status": "requires_payment_method",
            "metadata": dict(metadata or {}),
            "customer": customer,
            "idempotency_key": idempotency_key,
        }
        return dict(self.holds[ref])

    def confirm_hold(self, hold_ref, payment_method):
        self._call("confirm_hold")
        hold = self.holds[hold_ref]
        hold["status"] = self.confirm_status
        hold["payment_method"] = payment_method
        return dict(hold)

    def retrieve_hold(self, hold_ref):
        self._call("retrieve_hold")
        if hold_ref not in self.holds:
            raise GatewayError("No such payment_intent", "gateway_error")
        return dict(self.holds[hold_ref])

    def cancel_hold(self, hold_ref):
        self._call("cancel_hold")
        self.cancelled.append(hold_ref)
        if hold_ref in self.holds:
            self.holds[hold_ref]["status"] = "canceled"
        return dict(self.holds.get(hold_ref) or {})

    def create_customer(self, *, email, name, metadata=None):
        self._call("create_customer")
        customer = {"id": self._next("cus"), "email": email, "name": name, "metadata": dict(metadata or {})}
        self.customers.append(customer)
        return dict(customer)

    def create_setup_intent(self, *, customer, metadata=None):
        self._call("create_setup_intent")
        ref = self._next("seti")
        self.setup_intents[ref] = {
            "id": ref,
            "client_secret": f"{ref}_secret",
            "customer": customer,
            "status": "requires_payment_method",
            "metadata": dict(metadata or {}),
        }
        return dict(self.setup_intents[ref])

    def confirm_setup_intent(self, setup_ref, payment_method):
        self._call("confirm_setup_intent")
        intent = self.setup_intents[setup_ref]
        intent["status"] = "succeeded"
        intent["payment_method"] = payment_method
        return dict(intent)

    def retrieve_setup_intent(self, setup_ref):
        self._call("retrieve_setup_intent")
        if setup_ref not in self.setup_intents:
            raise GatewayError("No such setup_intent", "gateway_error")
        return dict(self.setup_intents[setup_ref])

    def tokenize_card(self, *, number, exp_month, exp_year, cvc, name):
        self._call("tokenize_card")
        ref = self._next("pm")
        brand = "visa" if number.startswith("4") else "mastercard"
        self.methods[ref] = {
            "id": ref,
            "type": "card",
            "card": {"brand": brand, "last4": number[-4:], "exp_month": exp_month, "exp_year": exp_year},
        }
        return dict(self.methods[ref])

    def retrieve_payment_method(self, method_token):
        self._call("retrieve_payment_method")
        if method_token not in self.methods:
            raise GatewayError("No such payment_method", "gateway_error")
        return dict(self.methods[method_token])

    def detach_payment_method(self, method_token):
        self._call("detach_payment_method")
        self.detached.append(method_token)
        return dict(self.methods.get(method_token) or {"id": method_token})

    def parse_event(self, payload, sig_header):
        if sig_header != "valid-signature":
            raise ValueError("Signature Stripe invalide")
        return json.loads(payload)

    def close(self):
        self.configured = False


class FakeOrderRepository:
    """Tables orders + commission_entries; l'unicité de payment_reference est garantie sous verrou."""

    def __init__(self):
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.commissions: List[Dict[str, Any]] = []
        self.statuses: List[tuple] = []
        self.insert_calls = 0
        self._lock = threading.Lock()

    def get_by_reference(self, payment_reference: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.rows.get(payment_reference)
            return dict(row) if row else None

    def get_by_id(self, order_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for row in self.rows.values():
                if row["id"] == order_id:
                    return dict(row)
        return None

    def create_order_transaction(self, order, commission):
        with self._lock:
            self.insert_calls += 1
            ref = order["payment_reference"]
            if ref in self.rows:
                raise DuplicateSubmission(ref)
            row = dict(order, id=str(uuid.uuid4()))
            self.rows[ref] = row
            if commission:
                self.commissions.append(dict(commission, order_id=row["id"]))
            return dict(row)

    def mark_payment_status(self, payment_reference: str, status: str) -> bool:
        self.statuses.append((payment_reference, status))
        if payment_reference in self.rows:
            self.rows[payment_reference]["status"] = status
        return True


class FakeInstrumentRepository:
    """Table customer_payment_methods (mêmes colonnes que la base)."""

    def __init__(self):
        self.rows: List[Dict[str, Any]] = []
        self._seq = 0

    def first_customer_ref(self, owner_id):
        rows = [r for r in self.rows if r["user_id"] == owner_id and r.get("stripe_customer_id")]
        rows.sort(key=lambda r: r["created_at"])
        return rows[0]["stripe_customer_id"] if rows else None

    def list_active(self, owner_id):
        return [dict(r) for r in self.rows if r["user_id"] == owner_id and r["is_active"]]

    def get(self, instrument_id):
        for r in self.rows:
            if r["id"] == instrument_id:
                return dict(r)
        return None

    def find_active_by_token(self, owner_id, method_token):
        for r in self.list_active(owner_id):
            if r["stripe_payment_method_id"] == method_token:
                return r
        return None

    def insert(self, row):
        self._seq += 1
        stored = dict(row, id=f"inst_{self._seq}", created_at=f"2026-01-01T00:00:{self._seq:02d}+00:00")
        self.rows.append(stored)
        return dict(stored)

    def clear_default(self, owner_id):
        for r in self.rows:
            if r["user_id"] == owner_id:
                r["is_default"] = False

    def mark_default(self, instrument_id):
        for r in self.rows:
            if r["id"] == instrument_id:
                r["is_default"] = True

    def deactivate(self, instrument_id):
        for r in self.rows:
            if r["id"] == instrument_id:
                r["is_active"] = False
                r["is_default"] = False

    def defaults(self, owner_id):
        return [r for r in self.rows if r["user_id"] == owner_id and r["is_active"] and r["is_default"]]


class FakeProofStorage:
    def __init__(self):
        self.uploads: List[Dict[str, Any]] = []
        self.fail_names: set = set()

    def upload(self, owner_id, name, content, mime_type):
        if name in self.fail_names:
            raise StorageError(f"Envoi du fichier {name} impossible")
        path = f"{owner_id}/{len(self.uploads) + 1}_{name}"
        self.uploads.append({"path": path, "size": len(content), "mime": mime_type})
        return path


class FakeLedgerRepository:
    def __init__(self, commissions=None, orders=None):
        self.commissions = list(commissions or [])
        self.orders = list(orders or [])

    def commissions_for_driver(self, driver_id):
        return [r for r in self.commissions if r.get("driver_id") == driver_id]

    def orders_for_merchant(self, merchant_id):
        return [r for r in self.orders if r.get("merchant_id") == merchant_id]


# --- Fixtures ---

@pytest.fixture(scope="session")
def app():
    return fastapi_app

@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    app.state.supabase = MagicMock()
    with TestClient(app) as c:
        yield c

@pytest.fixture
def fake_gateway():
    return FakeGateway()

@pytest.fixture
def order_repo():
    return FakeOrderRepository()

@pytest.fixture
def instrument_repo():
    return FakeInstrumentRepository()

@pytest.fixture
def proof_storage():
    return FakeProofStorage()

@pytest.fixture
def ledger_repo():
    return FakeLedgerRepository()

@pytest.fixture
def current_user() -> Dict[str, Any]:
    return {
        "id": "test-user",
        "email": "test@example.com",
        "role": "customer",
        "metadata": {"full_name": "Test User"},
        "token": "fake-token",
    }

# Simuler un utilisateur authentifié et brancher les faux adaptateurs sur les routes
@pytest.fixture(autouse=True)
def _override_dependencies(app, monkeypatch, current_user, fake_gateway, order_repo, instrument_repo, proof_storage, ledger_repo):
    monkeypatch.delenv("LOCAL_RATE_LIMIT_FALLBACK", raising=False)
    app.dependency_overrides[require_user] = lambda: current_user
    app.dependency_overrides[get_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_order_repository] = lambda: order_repo
    app.dependency_overrides[get_vault_service] = lambda: VaultService(instrument_repo, fake_gateway)
    app.dependency_overrides[get_proof_storage] = lambda: proof_storage
    app.dependency_overrides[get_ledger_repository] = lambda: ledger_repo
    try:
        yield
    finally:
        app.dependency_overrides.clear()
