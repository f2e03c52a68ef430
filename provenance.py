"""
Transfer authorization and the provenance state machine.

Every function here is a pure decision: it takes the reconstructed record and
a roles snapshot, raises a typed error when the move is not allowed, and
otherwise returns the ``StepPayload`` the caller should append to the ledger.

    Produced --(producer -> carrier)----> InTransit
    Produced --(producer -> purchaser)--> Delivered
    InTransit --(carrier -> purchaser)--> Delivered
    Delivered --(purchaser -> purchaser)-> Delivered   (resale)
    Delivered --(owner consumes)--------> Consumed     (terminal)
"""
from datetime import date
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

from errors import (
    AlreadyInitialized, IneligibleTransfer, NotInitialized, NotOwner,
    TerminalState, Unauthorized, ValidationError,
)
from metadata_store import IPFS_SCHEME, parse_ref
from schemas import Batch, CreateBatch, ProvenanceRecord, Role, StepPayload, SupplyState
from utils import is_valid_identity, normalize_identity

ALLOWED_TRANSFERS: Dict[Tuple[Role, SupplyState, Role], SupplyState] = {
    (Role.PRODUCER, SupplyState.PRODUCED, Role.CARRIER): SupplyState.IN_TRANSIT,
    (Role.PRODUCER, SupplyState.PRODUCED, Role.PURCHASER): SupplyState.DELIVERED,
    (Role.CARRIER, SupplyState.IN_TRANSIT, Role.PURCHASER): SupplyState.DELIVERED,
    (Role.PURCHASER, SupplyState.DELIVERED, Role.PURCHASER): SupplyState.DELIVERED,
}


def _identity(value: Optional[str], field: str) -> str:
    if not is_valid_identity(value):
        raise ValidationError(f"{field} is not a valid identity", value=value)
    return normalize_identity(value)


def allowed_transitions(owner_roles: FrozenSet[Role], state: SupplyState) -> Dict[Role, SupplyState]:
    """Recipient role -> resulting state, for an owner holding ``owner_roles``."""
    out = {}
    for (sender, from_state, recipient), to_state in ALLOWED_TRANSFERS.items():
        if sender in owner_roles and from_state == state:
            out[recipient] = to_state
    return out


def validate_mint(
    request: CreateBatch,
    minter: str,
    minter_roles: FrozenSet[Role],
    min_quantity: int = 1,
    max_quantity: int = 100,
    today: Optional[date] = None,
) -> str:
    minter = _identity(minter, "minter")
    if Role.PRODUCER not in minter_roles:
        raise Unauthorized("only producers can mint batches", identity=minter)
    if not (min_quantity <= request.quantity <= max_quantity):
        raise ValidationError(
            f"quantity must be between {min_quantity} and {max_quantity}",
            quantity=request.quantity,
        )
    if request.harvest_date > (today or date.today()):
        raise ValidationError("harvest date is in the future", harvest_date=request.harvest_date)
    if not request.metadata_ref.startswith(IPFS_SCHEME):
        raise ValidationError("metadata reference must be an ipfs:// URI", metadata_ref=request.metadata_ref)
    parse_ref(request.metadata_ref)
    return minter


def initialize(
    batch: Batch,
    record: Optional[ProvenanceRecord],
    producer: str,
    location: str = "",
    notes: str = "",
) -> StepPayload:
    producer = _identity(producer, "producer")
    if record is not None:
        raise AlreadyInitialized(f"batch {batch.id} already has provenance", batch_id=batch.id)
    if producer != normalize_identity(batch.minter):
        raise Unauthorized("only the batch minter can initialize provenance", batch_id=batch.id)
    return StepPayload(
        batch_id=batch.id,
        actor=producer,
        state=SupplyState.PRODUCED,
        location=location,
        notes=notes,
        submitted_by=producer,
        expected_steps=0,
        expected_owner=None,
    )


def _require_live(record: Optional[ProvenanceRecord], batch_id: Optional[int] = None) -> ProvenanceRecord:
    if record is None:
        raise NotInitialized("batch has no provenance yet", batch_id=batch_id)
    if record.current_state.is_terminal:
        raise TerminalState(f"batch {record.batch_id} has been consumed", batch_id=record.batch_id)
    return record


def transfer(
    record: Optional[ProvenanceRecord],
    roles: Mapping[str, FrozenSet[Role]],
    from_identity: str,
    to_identity: str,
    requested_state: SupplyState,
    location: str = "",
    notes: str = "",
    caller: Optional[str] = None,
) -> StepPayload:
    record = _require_live(record)
    sender = _identity(from_identity, "from_identity")
    recipient = _identity(to_identity, "to_identity")
    submitter = _identity(caller, "caller") if caller else sender
    if sender == recipient:
        raise ValidationError("cannot transfer a batch to its current holder", identity=sender)

    owner = normalize_identity(record.current_owner)
    if sender != owner:
        raise NotOwner(f"{sender} does not own batch {record.batch_id}", batch_id=record.batch_id)
    if submitter != sender and Role.ADMIN not in roles.get(submitter, frozenset()):
        raise NotOwner(f"{submitter} cannot act for the owner of batch {record.batch_id}",
                       batch_id=record.batch_id)

    offered = allowed_transitions(roles.get(sender, frozenset()), record.current_state)
    implied = {offered[r] for r in roles.get(recipient, frozenset()) if r in offered}
    if not implied:
        raise IneligibleTransfer(
            f"no transfer out of {record.current_state.label} from this owner to this recipient",
            batch_id=record.batch_id,
        )
    if requested_state not in implied:
        raise IneligibleTransfer(
            f"requested state {requested_state.label} does not match the recipient's role",
            batch_id=record.batch_id,
        )
    if requested_state.rank < record.current_state.rank:
        raise IneligibleTransfer("state cannot move backwards", batch_id=record.batch_id)

    return StepPayload(
        batch_id=record.batch_id,
        actor=recipient,
        state=requested_state,
        location=location,
        notes=notes,
        submitted_by=submitter,
        previous_owner=owner,
        expected_steps=record.total_steps,
        expected_owner=owner,
    )


def mark_consumed(
    record: Optional[ProvenanceRecord],
    actor: str,
    location: str = "",
    notes: str = "",
) -> StepPayload:
    record = _require_live(record)
    actor = _identity(actor, "actor")
    owner = normalize_identity(record.current_owner)
    if actor != owner:
        raise NotOwner(f"{actor} does not own batch {record.batch_id}", batch_id=record.batch_id)
    if record.current_state != SupplyState.DELIVERED:
        raise IneligibleTransfer(
            f"only delivered batches can be consumed (batch is {record.current_state.label})",
            batch_id=record.batch_id,
        )
    return StepPayload(
        batch_id=record.batch_id,
        actor=actor,
        state=SupplyState.CONSUMED,
        location=location,
        notes=notes,
        submitted_by=actor,
        previous_owner=owner,
        expected_steps=record.total_steps,
        expected_owner=owner,
    )
