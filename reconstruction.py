import asyncio
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

from errors import (
    InconsistentHistory, LedgerUnavailable, ProvenanceError,
    ReconstructionUnavailable, UnknownBatch,
)
from ledger import EventLogReader
from metadata_store import MetadataStoreClient
from schemas import (
    DESCRIPTIVE_FIELDS, Batch, BatchReconstruction, Catalog, CatalogEntry, CropMetadata,
    EventFilter, EventType, PartialFailure, ProvenanceRecord, ProvenanceStep, RawEvent,
    SupplyState,
)
from utils import normalize_identity

logger = logging.getLogger(__name__)


def batch_from_event(ev: RawEvent) -> Batch:
    p = ev.payload
    return Batch(
        id=ev.batch_id,
        minter=ev.actor,
        crop_type=p["crop_type"],
        quantity=p["quantity"],
        origin_farm=p["origin_farm"],
        harvest_date=p["harvest_date"],
        notes=p.get("notes", ""),
        metadata_ref=p["metadata_ref"],
        creation_time=ev.timestamp,
        sequence=ev.sequence,
        event_ref=ev.event_ref,
    )


def step_from_event(ev: RawEvent) -> ProvenanceStep:
    p = ev.payload
    return ProvenanceStep(
        batch_id=ev.batch_id,
        actor=ev.actor,
        state=SupplyState(p["state"]),
        timestamp=ev.timestamp,
        location=p.get("location", ""),
        notes=p.get("notes", ""),
        event_ref=ev.event_ref,
        sequence=ev.sequence,
        submitted_by=p.get("submitted_by"),
    )


def fold_steps(batch_id: int, steps: Iterable[ProvenanceStep],
               minter: Optional[str] = None) -> Optional[ProvenanceRecord]:
    """Fold an unordered set of steps into the current record, or None if there are none.

    With ``minter`` given, the history must have been started by that identity.
    """
    ordered = sorted(steps, key=lambda s: s.sequence)
    if not ordered:
        return None
    first = ordered[0]
    if first.state != SupplyState.PRODUCED:
        raise InconsistentHistory(f"batch {batch_id} history does not start at Produced",
                                  batch_id=batch_id)
    if minter is not None and normalize_identity(first.actor) != normalize_identity(minter):
        raise InconsistentHistory(f"batch {batch_id} was initialized by someone other than its minter",
                                  batch_id=batch_id, actor=first.actor)
    state = first.state
    for step in ordered[1:]:
        if step.state.rank < state.rank:
            raise InconsistentHistory(
                f"batch {batch_id} moves back from {state.label} to {step.state.label}",
                batch_id=batch_id, sequence=step.sequence,
            )
        state = step.state
    last = ordered[-1]
    return ProvenanceRecord(
        batch_id=batch_id,
        original_producer=first.actor,
        creation_time=first.timestamp,
        current_state=last.state,
        current_owner=last.actor,
        total_steps=len(ordered),
    )


def _split(events: Iterable[RawEvent]) -> Tuple[Dict[int, Batch], Dict[int, List[ProvenanceStep]]]:
    batches: Dict[int, Batch] = {}
    steps: Dict[int, List[ProvenanceStep]] = defaultdict(list)
    for ev in events:
        if ev.type == EventType.BATCH_MINTED:
            batches.setdefault(ev.batch_id, batch_from_event(ev))
        elif ev.type == EventType.PROVENANCE_STEP:
            steps[ev.batch_id].append(step_from_event(ev))
    return batches, steps


class ReconstructionEngine:
    def __init__(self, reader: EventLogReader, metadata: MetadataStoreClient, concurrency: int = 8):
        self._reader = reader
        self._metadata = metadata
        self._concurrency = max(1, concurrency)

    async def _read(self, flt: EventFilter) -> List[RawEvent]:
        try:
            return await self._reader.read(flt)
        except LedgerUnavailable as e:
            raise ReconstructionUnavailable(str(e)) from e

    async def _hydrate(self, batch: Batch) -> Tuple[Optional[CropMetadata], Optional[PartialFailure]]:
        try:
            return await self._metadata.fetch_metadata(batch.metadata_ref), None
        except (ProvenanceError, ValueError) as e:
            logger.warning("metadata for batch %s unavailable: %s", batch.id, e)
            return None, PartialFailure(
                batch_id=batch.id, missing_fields=list(DESCRIPTIVE_FIELDS), reason=str(e)
            )

    async def get_batch(self, batch_id: int) -> Batch:
        events = await self._read(EventFilter(event_type=EventType.BATCH_MINTED, batch_id=batch_id))
        if not events:
            raise UnknownBatch(f"batch {batch_id} does not exist", batch_id=batch_id)
        return batch_from_event(events[0])

    async def get_history(self, batch_id: int) -> List[ProvenanceStep]:
        events = await self._read(EventFilter(event_type=EventType.PROVENANCE_STEP, batch_id=batch_id))
        return sorted((step_from_event(e) for e in events), key=lambda s: s.sequence)

    async def get_record(self, batch_id: int) -> Optional[ProvenanceRecord]:
        return (await self.reconstruct(batch_id, hydrate=False)).record

    async def reconstruct(self, batch_id: int, hydrate: bool = True) -> BatchReconstruction:
        events = await self._read(EventFilter(batch_id=batch_id))
        batches, steps = _split(events)
        batch = batches.get(batch_id)
        if batch is None:
            raise UnknownBatch(f"batch {batch_id} does not exist", batch_id=batch_id)
        history = sorted(steps.get(batch_id, []), key=lambda s: s.sequence)
        record = fold_steps(batch_id, history, batch.minter)
        result = BatchReconstruction(batch=batch, record=record, steps=history)
        if hydrate:
            result.metadata, result.partial = await self._hydrate(batch)
        return result

    async def batches_for_actor(self, actor: str) -> List[int]:
        events = await self._read(EventFilter(actor=normalize_identity(actor)))
        return sorted({
            e.batch_id for e in events
            if e.batch_id is not None and e.type in (EventType.BATCH_MINTED, EventType.PROVENANCE_STEP)
        })

    async def catalog(self, state: Optional[SupplyState] = None, hydrate: bool = True) -> Catalog:
        batches, steps = _split(await self._read(EventFilter()))
        sem = asyncio.Semaphore(self._concurrency)

        async def build(batch: Batch) -> CatalogEntry:
            entry = CatalogEntry(batch=batch)
            try:
                entry.record = fold_steps(batch.id, steps.get(batch.id, []), batch.minter)
            except InconsistentHistory as e:
                logger.error("skipping record for batch %s: %s", batch.id, e)
                entry.partial = PartialFailure(batch_id=batch.id, missing_fields=["record"], reason=str(e))
            if state is not None and (entry.record is None or entry.record.current_state != state):
                return entry
            if hydrate:
                async with sem:
                    metadata, partial = await self._hydrate(batch)
                entry.metadata = metadata
                if partial is not None:
                    if entry.partial is not None:
                        partial.missing_fields = entry.partial.missing_fields + partial.missing_fields
                    entry.partial = partial
            return entry

        entries = await asyncio.gather(*(build(b) for b in sorted(batches.values(), key=lambda b: b.id)))
        if state is not None:
            entries = [e for e in entries if e.record is not None and e.record.current_state == state]
        degraded = sum(1 for e in entries if e.partial is not None)
        if degraded:
            logger.warning("catalog built with %d of %d entries degraded", degraded, len(entries))
        return Catalog(entries=list(entries), total=len(entries))
