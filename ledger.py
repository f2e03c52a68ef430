import asyncio
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session, sessionmaker

from database import Base
from errors import LedgerUnavailable, NetworkError, StaleRecord, ValidationError, map_ledger_error
from models import LedgerEvent
from schemas import ChainStatus, EventFilter, EventPayload, EventType, RawEvent
from utils import GENESIS, compute_hash, event_ref_for, utc_now_iso, verify_chain

logger = logging.getLogger(__name__)


class LedgerBackend(ABC):
    @abstractmethod
    async def append_event(self, payload: EventPayload) -> RawEvent:
        """Append one event; returns it as stored (with sequence and ref)."""

    @abstractmethod
    async def head(self) -> int:
        """Sequence number of the newest event, 0 when empty."""

    @abstractmethod
    async def scan_range(self, start: int, stop: int) -> List[RawEvent]:
        """Events with ``start <= sequence <= stop`` in ledger order."""


def _to_raw(ev: LedgerEvent) -> RawEvent:
    return RawEvent(
        sequence=ev.id,
        type=EventType(ev.type),
        batch_id=ev.batch_id,
        actor=ev.actor,
        payload=json.loads(ev.payload),
        timestamp=ev.timestamp,
        event_ref=ev.event_ref,
        prev_hash=ev.prev_hash,
        hash=ev.hash,
    )


class SqlLedger(LedgerBackend):
    """
    Local ledger stored in a single hash-chained SQL table.

    Provenance steps carry the step count and owner they were decided
    against; a step whose expectation no longer matches the stored history is
    rejected with ``StaleRecord``.
    """

    def __init__(self, engine, create_tables: bool = True):
        self._sessions = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        self._write_lock = threading.Lock()
        if create_tables:
            Base.metadata.create_all(bind=engine)

    async def append_event(self, payload: EventPayload) -> RawEvent:
        return await asyncio.to_thread(self._append, payload)

    async def head(self) -> int:
        return await asyncio.to_thread(self._head)

    async def scan_range(self, start: int, stop: int) -> List[RawEvent]:
        return await asyncio.to_thread(self._scan, start, stop)

    async def verify(self) -> ChainStatus:
        return await asyncio.to_thread(self._verify)

    # ---------- sync helpers ----------
    def _head(self) -> int:
        with self._sessions() as db:
            return db.scalar(select(func.max(LedgerEvent.id))) or 0

    def _scan(self, start: int, stop: int) -> List[RawEvent]:
        with self._sessions() as db:
            rows = db.scalars(
                select(LedgerEvent)
                .where(LedgerEvent.id >= start, LedgerEvent.id <= stop)
                .order_by(LedgerEvent.id.asc())
            ).all()
            return [_to_raw(r) for r in rows]

    def _verify(self) -> ChainStatus:
        with self._sessions() as db:
            rows = db.scalars(select(LedgerEvent).order_by(LedgerEvent.id.asc())).all()
            chain = [{
                "payload": self._hashed_body(r.type, r.batch_id, r.actor, json.loads(r.payload)),
                "timestamp": r.timestamp,
                "prev_hash": r.prev_hash,
                "hash": r.hash,
            } for r in rows]
        return ChainStatus(verified=verify_chain(chain), events=len(chain))

    @staticmethod
    def _hashed_body(ev_type: str, batch_id: Optional[int], actor: Optional[str], data: dict) -> dict:
        return {"type": ev_type, "batch_id": batch_id, "actor": actor, "data": data}

    def _check_fence(self, db: Session, payload: EventPayload) -> None:
        steps = db.scalars(
            select(LedgerEvent)
            .where(LedgerEvent.type == EventType.PROVENANCE_STEP.value,
                   LedgerEvent.batch_id == payload.batch_id)
            .order_by(LedgerEvent.id.asc())
        ).all()
        owner = steps[-1].actor if steps else None
        expected_steps = payload.data.get("expected_steps", 0)
        expected_owner = payload.data.get("expected_owner")
        if len(steps) != expected_steps or owner != expected_owner:
            raise StaleRecord(
                f"batch {payload.batch_id} changed since it was read",
                expected_steps=expected_steps,
                actual_steps=len(steps),
            )

    def _append(self, payload: EventPayload) -> RawEvent:
        with self._write_lock, self._sessions() as db:
            batch_id = payload.batch_id
            if payload.type == EventType.BATCH_MINTED:
                if batch_id is not None:
                    raise ValidationError("batch ids are assigned by the ledger", batch_id=batch_id)
                minted = db.scalar(
                    select(func.count()).select_from(LedgerEvent)
                    .where(LedgerEvent.type == EventType.BATCH_MINTED.value)
                ) or 0
                batch_id = minted + 1
            if payload.type == EventType.PROVENANCE_STEP:
                self._check_fence(db, payload)

            prev = db.scalar(select(LedgerEvent).order_by(LedgerEvent.id.desc()).limit(1))
            prev_hash = prev.hash if prev else GENESIS
            ts = payload.timestamp or utc_now_iso()
            body = self._hashed_body(payload.type.value, batch_id, payload.actor, payload.data)
            h = compute_hash(prev_hash, body, ts)
            ev = LedgerEvent(
                type=payload.type.value,
                batch_id=batch_id,
                actor=payload.actor,
                payload=json.dumps(payload.data),
                timestamp=ts,
                event_ref=event_ref_for(h),
                prev_hash=prev_hash,
                hash=h,
            )
            db.add(ev); db.commit(); db.refresh(ev)
            return _to_raw(ev)


def _matches(ev: RawEvent, flt: EventFilter) -> bool:
    if flt.event_type is not None and ev.type != flt.event_type:
        return False
    if flt.batch_id is not None and ev.batch_id != flt.batch_id:
        return False
    if flt.actor is not None:
        touched = {ev.actor, ev.payload.get("submitted_by"), ev.payload.get("previous_owner")}
        if flt.actor not in touched:
            return False
    return True


class EventLogReader:
    """Read-only, filtered view of the ledger built from range scans."""

    def __init__(
        self,
        backend: LedgerBackend,
        retries: int = 3,
        backoff: float = 0.2,
        chunk_size: int = 500,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._backend = backend
        self._retries = max(1, retries)
        self._backoff = backoff
        self._chunk_size = max(1, chunk_size)
        self._sleep = sleep

    async def read(self, flt: Optional[EventFilter] = None) -> List[RawEvent]:
        flt = flt or EventFilter()
        head = await self._call(self._backend.head)
        out: List[RawEvent] = []
        start = 1
        while start <= head:
            stop = min(head, start + self._chunk_size - 1)
            chunk = await self._call(self._backend.scan_range, start, stop)
            out.extend(ev for ev in chunk if _matches(ev, flt))
            start = stop + 1
        out.sort(key=lambda ev: ev.sequence)
        return out

    async def _call(self, fn, *args):
        last: Optional[BaseException] = None
        for attempt in range(1, self._retries + 1):
            try:
                return await fn(*args)
            except Exception as e:
                err = map_ledger_error(e)
                if err is e and not isinstance(err, NetworkError):
                    raise
                if not isinstance(err, NetworkError):
                    raise err from e
                last = err
                logger.warning("ledger read failed (attempt %d/%d): %s", attempt, self._retries, err)
                if attempt < self._retries:
                    await self._sleep(self._backoff * (2 ** (attempt - 1)))
        raise LedgerUnavailable(f"ledger unreachable after {self._retries} attempts: {last}") from last
