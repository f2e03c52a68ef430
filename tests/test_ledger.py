import json

import pytest
from sqlalchemy import update

from errors import (
    AlreadyInitialized, InsufficientFunds, LedgerUnavailable, NotOwner, SignatureRejected,
    StaleRecord, TransactionReverted, Unauthorized, ValidationError, map_ledger_error,
)
from ledger import EventLogReader, LedgerBackend
from models import LedgerEvent
from schemas import EventFilter, EventPayload, EventType, StepPayload, SupplyState

from conftest import BUYER, CARRIER, PRODUCER, mint_event, run


def _step(batch_id, actor, state, expected_steps, expected_owner, submitted_by=None):
    return StepPayload(
        batch_id=batch_id, actor=actor, state=state, submitted_by=submitted_by or actor,
        expected_steps=expected_steps, expected_owner=expected_owner,
    ).to_event()


class FlakyLedger(LedgerBackend):
    """Wraps a real ledger; the first ``failures`` reads raise."""

    def __init__(self, inner, failures, error=ConnectionError("network is unreachable")):
        self.inner = inner
        self.failures = failures
        self.error = error
        self.calls = 0

    async def append_event(self, payload):
        return await self.inner.append_event(payload)

    async def head(self):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return await self.inner.head()

    async def scan_range(self, start, stop):
        return await self.inner.scan_range(start, stop)


class CountingLedger(LedgerBackend):
    def __init__(self, inner):
        self.inner = inner
        self.scans = []

    async def append_event(self, payload):
        return await self.inner.append_event(payload)

    async def head(self):
        return await self.inner.head()

    async def scan_range(self, start, stop):
        self.scans.append((start, stop))
        return await self.inner.scan_range(start, stop)


# ---------- append ----------
def test_append_assigns_sequence_and_batch_ids(ledger):
    first = run(ledger.append_event(mint_event()))
    grant = run(ledger.append_event(EventPayload(type=EventType.ROLE_GRANTED, actor=PRODUCER,
                                                 data={"role": "producer", "granted_by": PRODUCER})))
    second = run(ledger.append_event(mint_event()))

    assert (first.sequence, grant.sequence, second.sequence) == (1, 2, 3)
    assert (first.batch_id, second.batch_id) == (1, 2)
    assert grant.batch_id is None
    assert first.prev_hash == "GENESIS"
    assert second.prev_hash == grant.hash
    assert first.event_ref == "0x" + first.hash
    assert run(ledger.head()) == 3



def test_mint_cannot_choose_its_own_batch_id(ledger):
    run(ledger.append_event(mint_event()))
    claimed = mint_event().model_copy(update={"batch_id": 1})
    with pytest.raises(ValidationError):
        run(ledger.append_event(claimed))
    assert run(ledger.head()) == 1

def test_chain_verifies_until_tampered(ledger):
    for _ in range(3):
        run(ledger.append_event(mint_event()))
    status = run(ledger.verify())
    assert status.verified and status.events == 3

    with ledger._sessions() as db:
        db.execute(update(LedgerEvent).where(LedgerEvent.id == 2)
                   .values(payload=json.dumps({"quantity": 99})))
        db.commit()
    assert not run(ledger.verify()).verified


def test_step_with_stale_expectation_is_rejected(ledger):
    run(ledger.append_event(mint_event()))
    run(ledger.append_event(_step(1, PRODUCER, SupplyState.PRODUCED, 0, None)))

    # two writers decided against the same record; only the first lands
    run(ledger.append_event(_step(1, CARRIER, SupplyState.IN_TRANSIT, 1, PRODUCER, PRODUCER)))
    with pytest.raises(StaleRecord):
        run(ledger.append_event(_step(1, BUYER, SupplyState.DELIVERED, 1, PRODUCER, PRODUCER)))

    run(ledger.append_event(_step(1, BUYER, SupplyState.DELIVERED, 2, CARRIER, CARRIER)))
    assert run(ledger.head()) == 4


def test_second_initialization_is_stale(ledger):
    run(ledger.append_event(mint_event()))
    run(ledger.append_event(_step(1, PRODUCER, SupplyState.PRODUCED, 0, None)))
    with pytest.raises(StaleRecord):
        run(ledger.append_event(_step(1, PRODUCER, SupplyState.PRODUCED, 0, None)))


# ---------- reader ----------
def test_reader_scans_in_chunks_and_filters(ledger):
    for _ in range(10):
        run(ledger.append_event(mint_event()))
    run(ledger.append_event(_step(4, PRODUCER, SupplyState.PRODUCED, 0, None)))
    counting = CountingLedger(ledger)
    reader = EventLogReader(counting, chunk_size=4)

    everything = run(reader.read())
    assert [e.sequence for e in everything] == list(range(1, 12))
    assert counting.scans == [(1, 4), (5, 8), (9, 11)]

    batch4 = run(reader.read(EventFilter(batch_id=4)))
    assert [e.type for e in batch4] == [EventType.BATCH_MINTED, EventType.PROVENANCE_STEP]

    steps = run(reader.read(EventFilter(event_type=EventType.PROVENANCE_STEP)))
    assert [e.batch_id for e in steps] == [4]


def test_reader_actor_filter_sees_submitter_and_previous_owner(ledger):
    run(ledger.append_event(mint_event()))
    run(ledger.append_event(_step(1, PRODUCER, SupplyState.PRODUCED, 0, None)))
    transfer = StepPayload(batch_id=1, actor=CARRIER, state=SupplyState.IN_TRANSIT,
                           submitted_by=PRODUCER, previous_owner=PRODUCER,
                           expected_steps=1, expected_owner=PRODUCER)
    run(ledger.append_event(transfer.to_event()))
    reader = EventLogReader(ledger)

    assert [e.sequence for e in run(reader.read(EventFilter(actor=PRODUCER)))] == [1, 2, 3]
    assert [e.sequence for e in run(reader.read(EventFilter(actor=CARRIER)))] == [3]
    assert run(reader.read(EventFilter(actor=BUYER))) == []


def test_reader_on_empty_ledger(ledger):
    assert run(EventLogReader(ledger).read()) == []


def test_reader_retries_transient_failures(ledger):
    run(ledger.append_event(mint_event()))
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    flaky = FlakyLedger(ledger, failures=2)
    reader = EventLogReader(flaky, retries=3, backoff=0.5, sleep=fake_sleep)
    assert len(run(reader.read())) == 1
    assert flaky.calls == 3
    assert sleeps == [0.5, 1.0]


def test_reader_gives_up_after_retries(ledger):
    async def fake_sleep(seconds):
        pass

    flaky = FlakyLedger(ledger, failures=10)
    reader = EventLogReader(flaky, retries=3, sleep=fake_sleep)
    with pytest.raises(LedgerUnavailable):
        run(reader.read())
    assert flaky.calls == 3


def test_reader_does_not_retry_rejections(ledger):
    flaky = FlakyLedger(ledger, failures=10, error=RuntimeError("execution reverted: Not token owner"))
    reader = EventLogReader(flaky, retries=3, backoff=0.0)
    with pytest.raises(NotOwner):
        run(reader.read())
    assert flaky.calls == 1


# ---------- error mapping ----------
class CodedError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


@pytest.mark.parametrize("error,expected", [
    (CodedError("whatever", 4001), SignatureRejected),
    (RuntimeError("MetaMask Tx Signature: User rejected the request"), SignatureRejected),
    (RuntimeError("insufficient funds for gas * price + value"), InsufficientFunds),
    (RuntimeError("execution reverted: Must be farmer"), Unauthorized),
    (RuntimeError("execution reverted: Already initialized"), AlreadyInitialized),
    (RuntimeError("execution reverted: Batch too large"), ValidationError),
    (RuntimeError("execution reverted"), TransactionReverted),
    (ConnectionError("connection reset"), LedgerUnavailable),
    (RuntimeError("could not detect network"), LedgerUnavailable),
    (RuntimeError("something odd"), TransactionReverted),
])
def test_map_ledger_error(error, expected):
    mapped = map_ledger_error(error)
    assert isinstance(mapped, expected)
    assert mapped.kind == expected.__name__


def test_map_ledger_error_passes_local_errors_through():
    err = StaleRecord("moved")
    assert map_ledger_error(err) is err
