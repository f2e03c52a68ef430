from datetime import date, timedelta
from itertools import product

import pytest

from errors import (
    AlreadyInitialized, IneligibleTransfer, NotInitialized, NotOwner,
    TerminalState, Unauthorized, ValidationError,
)
from provenance import (
    ALLOWED_TRANSFERS, allowed_transitions, initialize, mark_consumed, transfer, validate_mint,
)
from schemas import Batch, Role, SupplyState

from conftest import (
    ADMIN, BUYER, BUYER2, CARRIER, PRODUCER, ROLES, STRANGER, mint_request, record,
)

LIVE_STATES = [SupplyState.PRODUCED, SupplyState.IN_TRANSIT, SupplyState.DELIVERED]
SENDER = "0x" + "01" * 20
RECIPIENT = "0x" + "02" * 20


def _batch(minter=PRODUCER):
    return Batch(
        id=1, minter=minter, crop_type="Kale", quantity=5, origin_farm="Doi Saket Hydro",
        harvest_date=date(2025, 8, 1), metadata_ref="ipfs://QmMeta",
        creation_time="2025-08-01T00:00:00", sequence=1, event_ref="0x01",
    )


@pytest.mark.parametrize("sender_role,state,recipient_role", list(product(Role, LIVE_STATES, Role)))
def test_transfer_table_is_exhaustive(sender_role, state, recipient_role):
    roles = {SENDER: frozenset({sender_role}), RECIPIENT: frozenset({recipient_role})}
    rec = record(state=state, owner=SENDER)
    implied = ALLOWED_TRANSFERS.get((sender_role, state, recipient_role))

    for requested in SupplyState:
        if implied is not None and requested == implied:
            step = transfer(rec, roles, SENDER, RECIPIENT, requested)
            assert step.state == implied
            assert step.actor == RECIPIENT
            assert step.previous_owner == SENDER
        else:
            with pytest.raises(IneligibleTransfer):
                transfer(rec, roles, SENDER, RECIPIENT, requested)


@pytest.mark.parametrize("requested", list(SupplyState))
def test_nothing_leaves_consumed(requested):
    rec = record(state=SupplyState.CONSUMED, owner=BUYER, steps=4)
    with pytest.raises(TerminalState):
        transfer(rec, ROLES, BUYER, BUYER2, requested)
    with pytest.raises(TerminalState):
        transfer(rec, ROLES, STRANGER, BUYER2, requested)


def test_transfer_by_non_owner_is_rejected():
    rec = record(state=SupplyState.PRODUCED, owner=PRODUCER)
    with pytest.raises(NotOwner):
        transfer(rec, ROLES, BUYER, BUYER2, SupplyState.DELIVERED)


def test_transfer_needs_a_record():
    with pytest.raises(NotInitialized):
        transfer(None, ROLES, PRODUCER, CARRIER, SupplyState.IN_TRANSIT)


def test_caller_must_be_owner_unless_admin():
    rec = record(state=SupplyState.PRODUCED, owner=PRODUCER, steps=1)
    with pytest.raises(NotOwner):
        transfer(rec, ROLES, PRODUCER, CARRIER, SupplyState.IN_TRANSIT, caller=STRANGER)

    step = transfer(rec, ROLES, PRODUCER, CARRIER, SupplyState.IN_TRANSIT, caller=ADMIN)
    assert step.submitted_by == ADMIN
    assert step.actor == CARRIER
    assert step.expected_steps == 1
    assert step.expected_owner == PRODUCER


def test_transfer_carries_fencing_expectations():
    rec = record(state=SupplyState.IN_TRANSIT, owner=CARRIER, steps=2)
    step = transfer(rec, ROLES, CARRIER, BUYER, SupplyState.DELIVERED, location="Warehouse CM")
    assert (step.expected_steps, step.expected_owner) == (2, CARRIER)
    assert step.location == "Warehouse CM"


def test_identities_are_compared_case_insensitively():
    rec = record(state=SupplyState.PRODUCED, owner=PRODUCER)
    step = transfer(rec, ROLES, PRODUCER.upper().replace("0X", "0x"), CARRIER, SupplyState.IN_TRANSIT)
    assert step.actor == CARRIER


def test_transfer_rejects_malformed_or_self_targets():
    rec = record(state=SupplyState.PRODUCED, owner=PRODUCER)
    with pytest.raises(ValidationError):
        transfer(rec, ROLES, PRODUCER, "not-an-address", SupplyState.IN_TRANSIT)
    with pytest.raises(ValidationError):
        transfer(rec, ROLES, PRODUCER, PRODUCER, SupplyState.IN_TRANSIT)


def test_recipient_without_role_is_ineligible():
    rec = record(state=SupplyState.PRODUCED, owner=PRODUCER)
    with pytest.raises(IneligibleTransfer):
        transfer(rec, ROLES, PRODUCER, STRANGER, SupplyState.DELIVERED)


def test_allowed_transitions_for_producer():
    offered = allowed_transitions(frozenset({Role.PRODUCER}), SupplyState.PRODUCED)
    assert offered == {Role.CARRIER: SupplyState.IN_TRANSIT, Role.PURCHASER: SupplyState.DELIVERED}
    assert allowed_transitions(frozenset({Role.PRODUCER}), SupplyState.IN_TRANSIT) == {}


# ---------- initialize ----------
def test_initialize_by_minter():
    step = initialize(_batch(), None, PRODUCER, "Mae Rim", "first")
    assert step.state == SupplyState.PRODUCED
    assert step.actor == PRODUCER
    assert step.expected_steps == 0 and step.expected_owner is None


def test_initialize_twice_fails():
    with pytest.raises(AlreadyInitialized):
        initialize(_batch(), record(), PRODUCER)


def test_initialize_by_someone_else_fails():
    with pytest.raises(Unauthorized):
        initialize(_batch(), None, CARRIER)


# ---------- consume ----------
def test_mark_consumed_from_delivered():
    step = mark_consumed(record(state=SupplyState.DELIVERED, owner=BUYER, steps=3), BUYER, "Kitchen")
    assert step.state == SupplyState.CONSUMED
    assert step.actor == BUYER
    assert step.expected_steps == 3


@pytest.mark.parametrize("state", [SupplyState.PRODUCED, SupplyState.IN_TRANSIT])
def test_mark_consumed_too_early(state):
    with pytest.raises(IneligibleTransfer):
        mark_consumed(record(state=state, owner=BUYER), BUYER)


def test_mark_consumed_by_non_owner():
    with pytest.raises(NotOwner):
        mark_consumed(record(state=SupplyState.DELIVERED, owner=BUYER), BUYER2)


def test_mark_consumed_twice():
    with pytest.raises(TerminalState):
        mark_consumed(record(state=SupplyState.CONSUMED, owner=BUYER), BUYER)


# ---------- mint ----------
def test_validate_mint_accepts_good_batch():
    assert validate_mint(mint_request(), PRODUCER, ROLES[PRODUCER], today=date(2025, 9, 1)) == PRODUCER


def test_validate_mint_requires_producer_role():
    with pytest.raises(Unauthorized):
        validate_mint(mint_request(), BUYER, ROLES[BUYER], today=date(2025, 9, 1))


@pytest.mark.parametrize("quantity", [0, -3, 101])
def test_validate_mint_quantity_bounds(quantity):
    with pytest.raises(ValidationError):
        validate_mint(mint_request(quantity=quantity), PRODUCER, ROLES[PRODUCER], today=date(2025, 9, 1))


def test_validate_mint_rejects_future_harvest():
    today = date(2025, 9, 1)
    req = mint_request(harvest=today + timedelta(days=1))
    with pytest.raises(ValidationError):
        validate_mint(req, PRODUCER, ROLES[PRODUCER], today=today)


@pytest.mark.parametrize("ref", [
    "QmMeta", "https://example.com/x", "ipfs://", "ipfs://Qm\x01bad", "ipfs://Qm/../x",
])
def test_validate_mint_requires_ipfs_reference(ref):
    with pytest.raises(ValidationError):
        validate_mint(mint_request(metadata_ref=ref), PRODUCER, ROLES[PRODUCER], today=date(2025, 9, 1))
