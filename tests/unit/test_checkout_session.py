from decimal import Decimal

import pytest

from epicerie.checkout.session import CheckoutSession
from epicerie.checkout.states import CardPayment, ManualTransfer, MethodSelection, ProofUpload, Submitted
from epicerie.errors import CheckoutBusy, CheckoutError, GatewayError, InvalidTransition, ValidationError
from epicerie.orders.models import OrderDraft
from epicerie.payments.card import CardDetails, CardPaymentFlow

MB = 1024 * 1024

MERCHANT = {
    "interac_enabled": True,
    "interac_email": "paiements@epicerie-du-coin.ca",
    "interac_phone": "514-555-0100",
    "business_name": "Épicerie du Coin",
}


class FakeOrdersClient:
    def __init__(self, error=None):
        self.error = error
        self.finalize_calls = []
        self.uploads = []

    def finalize(self, **kwargs):
        self.finalize_calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return {"order": {"id": "order-1", "paymentReference": kwargs["payment_reference"]}, "created": True}

    def upload_proofs(self, files):
        self.uploads.extend(files)
        return {
            "accepted": [{"name": n, "size": len(c), "mimeType": m, "storageRef": f"test-user/{n}"} for n, m, c in files],
            "rejected": [],
        }


def _draft(subtotal="45.00", delivery_fee="5.00"):
    return OrderDraft.model_validate({
        "customerId": "test-user",
        "merchantId": "merchant-1",
        "driverId": "driver-1",
        "items": [{"productId": "p1", "name": "Pommes", "quantity": 2, "unitPrice": "22.50"}],
        "subtotal": subtotal,
        "deliveryFee": delivery_fee,
        "totalAmount": Decimal(subtotal) + Decimal(delivery_fee),
    })

def _card(cvv="123"):
    return CardDetails(number="4242424242424242", expiry="12/35", cvv=cvv, name="Marie Tremblay")

def _session(fake_gateway, orders=None, merchant=None):
    return CheckoutSession(
        _draft(),
        orders or FakeOrdersClient(),
        card_flow=CardPaymentFlow(fake_gateway),
        merchant=merchant,
        commission_percent="20",
    )


def test_starts_in_method_selection_with_quotes(fake_gateway):
    session = _session(fake_gateway)
    assert isinstance(session.state, MethodSelection)
    assert session.state.amount == Decimal("50.00")
    assert [q["method"] for q in session.state.quotes] == ["card"]

def test_choose_card_creates_attempt_with_fees(fake_gateway):
    session = _session(fake_gateway)
    state = session.choose_method("card")

    assert isinstance(state, CardPayment)
    assert state.attempt.attempt_id.startswith("att_")
    assert state.attempt.amount == Decimal("51.50")
    assert sum(state.attempt.breakdown.values()) == Decimal("51.50")

def test_interac_requires_merchant_support(fake_gateway):
    session = _session(fake_gateway)
    with pytest.raises(ValidationError) as exc:
        session.choose_method("interac")
    assert exc.value.reason == "unsupported_method"
    assert isinstance(session.state, MethodSelection)

def test_card_payment_submits_exactly_once(fake_gateway):
    orders = FakeOrdersClient()
    session = _session(fake_gateway, orders)
    session.choose_method("card")

    state = session.pay_card(_card())

    assert isinstance(state, Submitted)
    assert state.succeeded is True
    assert len(orders.finalize_calls) == 1
    call = orders.finalize_calls[0]
    assert call["method"] == "card"
    assert call["payment_reference"] == state.attempt.gateway_reference
    assert call["breakdown"] == {"merchantAmount": "45.00", "driverAmount": "4.00", "platformAmount": "2.50"}
    assert call["order_draft"]["totalAmount"] == "51.50"
    assert fake_gateway.holds[call["payment_reference"]]["amount"] == 5150

def test_invalid_card_keeps_state_and_attempt(fake_gateway):
    session = _session(fake_gateway)
    before = session.choose_method("card")

    with pytest.raises(ValidationError):
        session.pay_card(_card(cvv="1"))

    assert session.state is before
    assert fake_gateway.calls == []

def test_declined_card_renews_attempt_for_next_try(fake_gateway):
    orders = FakeOrdersClient()
    session = _session(fake_gateway, orders)
    first = session.choose_method("card")
    fake_gateway.fail_next("confirm_hold", GatewayError("Votre carte a été refusée", "card_declined"))

    with pytest.raises(GatewayError):
        session.pay_card(_card())

    retry_state = session.state
    assert isinstance(retry_state, CardPayment)
    assert retry_state.last_error.reason == "card_declined"
    assert retry_state.attempt.attempt_id != first.attempt.attempt_id
    assert orders.finalize_calls == []

    session.pay_card(_card())
    assert len(fake_gateway.holds) == 2
    assert len(orders.finalize_calls) == 1

def test_transitions_outside_the_graph_are_refused(fake_gateway):
    session = _session(fake_gateway, merchant=MERCHANT)
    with pytest.raises(InvalidTransition):
        session.pay_card(_card())
    with pytest.raises(InvalidTransition):
        session.submit_proof()
    session.choose_method("card")
    with pytest.raises(InvalidTransition):
        session.start_proof_upload()
    with pytest.raises(InvalidTransition):
        session.restart()

def test_back_abandons_attempt(fake_gateway):
    session = _session(fake_gateway, merchant=MERCHANT)
    first = session.choose_method("interac")
    assert isinstance(session.back(), MethodSelection)
    second = session.choose_method("interac")
    assert second.attempt.attempt_id != first.attempt.attempt_id

def test_operation_in_flight_rejects_concurrent_action(fake_gateway):
    seen = {}

    class ReentrantFlow(CardPaymentFlow):
        def pay(self, **kwargs):
            try:
                session.back()
            except CheckoutBusy as e:
                seen["busy"] = e
            return super().pay(**kwargs)

    session = CheckoutSession(_draft(), FakeOrdersClient(), card_flow=ReentrantFlow(fake_gateway), commission_percent="20")
    session.choose_method("card")
    session.pay_card(_card())

    assert seen["busy"].reason == "checkout_busy"
    assert isinstance(session.state, Submitted)

def test_failed_submission_can_restart_with_new_attempt(fake_gateway):
    orders = FakeOrdersClient(error=CheckoutError("Service de commandes injoignable", "service_unavailable"))
    session = _session(fake_gateway, orders)
    first = session.choose_method("card")

    with pytest.raises(CheckoutError):
        session.pay_card(_card())

    failed = session.state
    assert isinstance(failed, Submitted)
    assert failed.succeeded is False
    assert failed.error.reason == "service_unavailable"
    assert len(orders.finalize_calls) == 1

    assert isinstance(session.restart(), MethodSelection)
    again = session.choose_method("card")
    assert again.attempt.attempt_id != first.attempt.attempt_id

def test_successful_submission_cannot_restart(fake_gateway):
    session = _session(fake_gateway)
    session.choose_method("card")
    session.pay_card(_card())
    with pytest.raises(InvalidTransition):
        session.restart()

def test_interac_flow_uploads_proofs_and_submits(fake_gateway):
    orders = FakeOrdersClient()
    session = CheckoutSession(_draft("70.00", "5.00"), orders, merchant=MERCHANT, commission_percent="20")

    manual = session.choose_method("interac")
    assert isinstance(manual, ManualTransfer)
    assert manual.instructions.amount == Decimal("75.00")
    assert manual.instructions.email == "paiements@epicerie-du-coin.ca"

    assert isinstance(session.start_proof_upload(), ProofUpload)
    with pytest.raises(ValidationError) as exc:
        session.add_proof("notes.txt", 100, "text/plain", b"x" * 100)
    assert exc.value.reason == "unsupported_type"
    assert orders.uploads == []

    session.add_proof("virement.jpg", 2 * MB, "image/jpeg", b"x" * (2 * MB))
    session.add_proof("releve.pdf", 3 * MB, "application/pdf", b"x" * (3 * MB))
    assert [f.name for f in session.state.files] == ["virement.jpg", "releve.pdf"]

    state = session.submit_proof()

    assert state.succeeded is True
    call = orders.finalize_calls[0]
    assert call["method"] == "interac"
    assert call["payment_reference"].startswith("proof_")
    assert call["proof"]["reference"] == call["payment_reference"]
    assert [f["storageRef"] for f in call["proof"]["files"]] == ["test-user/virement.jpg", "test-user/releve.pdf"]
    assert call["breakdown"] == {"merchantAmount": "70.00", "driverAmount": "4.00", "platformAmount": "1.00"}
    assert fake_gateway.calls == []

def test_submit_proof_requires_a_file(fake_gateway):
    session = CheckoutSession(_draft(), FakeOrdersClient(), merchant=MERCHANT)
    session.choose_method("interac")
    session.start_proof_upload()
    with pytest.raises(ValidationError) as exc:
        session.submit_proof()
    assert exc.value.reason == "no_proof_files"
    assert isinstance(session.state, ProofUpload)
