import pytest

from epicerie.errors import NotFound, PaymentNotConfirmed, ValidationError
from epicerie.payments.card import CardDetails
from epicerie.vault.service import VaultService

OWNER = "u1"


def _card(number="4242424242424242"):
    return CardDetails(number=number, expiry="12/35", cvv="123", name="Marie Tremblay")


@pytest.fixture
def vault(instrument_repo, fake_gateway):
    return VaultService(instrument_repo, fake_gateway)


def test_first_instrument_becomes_default(vault, instrument_repo):
    stored = vault.add_instrument(OWNER, "marie@example.com", "Marie", _card())

    assert stored.is_default is True
    assert stored.is_active is True
    assert stored.last4 == "4242"
    assert stored.brand == "visa"
    assert stored.expiry_month == 12
    assert stored.expiry_year == 2035
    assert len(instrument_repo.defaults(OWNER)) == 1

def test_second_instrument_keeps_existing_default(vault, instrument_repo):
    first = vault.add_instrument(OWNER, "marie@example.com", "Marie", _card())
    second = vault.add_instrument(OWNER, "marie@example.com", "Marie", _card("5555555555554444"))

    assert second.is_default is False
    assert [r["id"] for r in instrument_repo.defaults(OWNER)] == [first.id]

def test_make_default_moves_the_default(vault, instrument_repo):
    vault.add_instrument(OWNER, "marie@example.com", "Marie", _card())
    second = vault.add_instrument(OWNER, "marie@example.com", "Marie", _card("5555555555554444"), make_default=True)

    assert second.is_default is True
    assert [r["id"] for r in instrument_repo.defaults(OWNER)] == [second.id]

def test_customer_is_reused_across_instruments(vault, fake_gateway):
    first = vault.add_instrument(OWNER, "marie@example.com", "Marie", _card())
    second = vault.add_instrument(OWNER, "marie@example.com", "Marie", _card("5555555555554444"))

    assert len(fake_gateway.customers) == 1
    assert first.gateway_customer_ref == second.gateway_customer_ref

def test_set_default_switches_single_default(vault, instrument_repo):
    first = vault.add_instrument(OWNER, "marie@example.com", "Marie", _card())
    second = vault.add_instrument(OWNER, "marie@example.com", "Marie", _card("5555555555554444"))

    updated = vault.set_default(OWNER, second.id)

    assert updated.is_default is True
    assert [r["id"] for r in instrument_repo.defaults(OWNER)] == [second.id]
    assert vault.set_default(OWNER, first.id).id == first.id
    assert [r["id"] for r in instrument_repo.defaults(OWNER)] == [first.id]

def test_remove_detaches_and_deactivates_without_promotion(vault, instrument_repo, fake_gateway):
    first = vault.add_instrument(OWNER, "marie@example.com", "Marie", _card())
    vault.add_instrument(OWNER, "marie@example.com", "Marie", _card("5555555555554444"))

    vault.remove_instrument(OWNER, first.id)

    assert fake_gateway.detached == [first.gateway_method_token]
    assert [i.last4 for i in vault.list_instruments(OWNER)] == ["4444"]
    assert instrument_repo.defaults(OWNER) == []
    # jamais supprimé physiquement
    assert instrument_repo.get(first.id)["is_active"] is False

def test_instruments_of_another_owner_are_not_found(vault):
    stored = vault.add_instrument(OWNER, "marie@example.com", "Marie", _card())
    with pytest.raises(NotFound):
        vault.set_default("someone-else", stored.id)
    with pytest.raises(NotFound):
        vault.remove_instrument("someone-else", stored.id)

def test_removed_instrument_cannot_become_default(vault):
    stored = vault.add_instrument(OWNER, "marie@example.com", "Marie", _card())
    vault.remove_instrument(OWNER, stored.id)
    with pytest.raises(NotFound):
        vault.set_default(OWNER, stored.id)

def test_confirm_setup_requires_succeeded_intent(vault, fake_gateway):
    started = vault.start_setup(OWNER, "marie@example.com", "Marie")
    token = fake_gateway.tokenize_card(number="4242424242424242", exp_month=12, exp_year=2035, cvc="123", name="Marie")

    with pytest.raises(PaymentNotConfirmed) as exc:
        vault.confirm_setup(OWNER, started["setupRef"], token["id"])
    assert exc.value.reason == "setup_not_confirmed"

def test_confirm_setup_is_replayable(vault, fake_gateway, instrument_repo):
    started = vault.start_setup(OWNER, "marie@example.com", "Marie")
    assert started["clientSecret"].endswith("_secret")
    token = fake_gateway.tokenize_card(number="4242424242424242", exp_month=12, exp_year=2035, cvc="123", name="Marie")
    fake_gateway.confirm_setup_intent(started["setupRef"], token["id"])

    first = vault.confirm_setup(OWNER, started["setupRef"], token["id"])
    again = vault.confirm_setup(OWNER, started["setupRef"], token["id"])

    assert first.id == again.id
    assert len(instrument_repo.rows) == 1
    assert instrument_repo.rows[0]["metadata"] == {"setup_intent_id": started["setupRef"]}

def test_confirm_setup_of_another_owner_is_not_found(vault, fake_gateway):
    started = vault.start_setup(OWNER, "marie@example.com", "Marie")
    with pytest.raises(NotFound):
        vault.confirm_setup("intruder", started["setupRef"], "pm_x")

def test_confirm_setup_rejects_non_card_methods(vault, fake_gateway):
    started = vault.start_setup(OWNER, "marie@example.com", "Marie")
    fake_gateway.methods["pm_bank"] = {"id": "pm_bank", "type": "acss_debit"}
    fake_gateway.confirm_setup_intent(started["setupRef"], "pm_bank")

    with pytest.raises(ValidationError) as exc:
        vault.confirm_setup(OWNER, started["setupRef"], "pm_bank")
    assert exc.value.reason == "invalid_card"

def test_add_instrument_validates_card_locally(vault, fake_gateway):
    with pytest.raises(ValidationError):
        vault.add_instrument(OWNER, "marie@example.com", "Marie", CardDetails("4242", "12/35", "123", "Marie"))
    assert fake_gateway.calls == []

def test_confirm_setup_rejects_token_not_attached_to_the_intent(vault, fake_gateway, instrument_repo):
    started = vault.start_setup(OWNER, "marie@example.com", "Marie")
    attached = fake_gateway.tokenize_card(number="4242424242424242", exp_month=12, exp_year=2035, cvc="123", name="Marie")
    other = fake_gateway.tokenize_card(number="5555555555554444", exp_month=12, exp_year=2035, cvc="123", name="Marie")
    fake_gateway.confirm_setup_intent(started["setupRef"], attached["id"])

    with pytest.raises(ValidationError) as exc:
        vault.confirm_setup(OWNER, started["setupRef"], other["id"])

    assert exc.value.fields == {"methodToken": "Carte différente"}
    assert instrument_repo.rows == []
