"""
Write path: reconstruct, decide, append.

The ledger rejects a provenance step whose expected step count or owner no
longer matches its history (``StaleRecord``). When that happens the decision
is redone once against a fresh reconstruction before the error is surfaced.
"""
import logging
from datetime import date
from typing import Awaitable, Callable, Optional

from config import Settings
from errors import StaleRecord, Unauthorized, ValidationError, map_ledger_error
from ledger import EventLogReader, LedgerBackend
from metadata_store import MetadataStoreClient
from provenance import initialize, mark_consumed, transfer, validate_mint
from reconstruction import ReconstructionEngine, batch_from_event, step_from_event
from roles import SELF_SERVICE_ROLES, RoleCache
from schemas import (
    Batch, BatchReconstruction, CreateBatch, EventPayload, EventType, ProvenanceStep, RawEvent,
    Role, StepPayload, SupplyState,
)
from utils import decode_qr, is_valid_identity, normalize_identity, short_identity

logger = logging.getLogger(__name__)


class ProvenanceService:
    def __init__(self, ledger: LedgerBackend, metadata: MetadataStoreClient, settings: Settings):
        self.settings = settings
        self.ledger = ledger
        self.metadata = metadata
        self.reader = EventLogReader(
            ledger,
            retries=settings.ledger_retries,
            backoff=settings.ledger_backoff,
            chunk_size=settings.ledger_scan_chunk,
        )
        self.roles = RoleCache(self.reader)
        self.engine = ReconstructionEngine(self.reader, metadata, concurrency=settings.catalog_concurrency)

    async def _append(self, payload: EventPayload) -> RawEvent:
        try:
            return await self.ledger.append_event(payload)
        except Exception as e:
            err = map_ledger_error(e)
            if err is e:
                raise
            raise err from e

    # ---------- roles ----------
    async def grant_role(self, identity: str, role: Role, granted_by: str) -> RawEvent:
        return await self._change_role(EventType.ROLE_GRANTED, identity, role, granted_by)

    async def revoke_role(self, identity: str, role: Role, granted_by: str) -> RawEvent:
        return await self._change_role(EventType.ROLE_REVOKED, identity, role, granted_by)

    async def _change_role(self, ev_type: EventType, identity: str, role: Role, granted_by: str) -> RawEvent:
        for value, field in ((identity, "identity"), (granted_by, "granted_by")):
            if not is_valid_identity(value):
                raise ValidationError(f"{field} is not a valid identity", value=value)
        identity, granted_by = normalize_identity(identity), normalize_identity(granted_by)

        self_service = identity == granted_by and role in SELF_SERVICE_ROLES
        if not self_service:
            granter_roles = await self.roles.roles_for(granted_by, fresh=True)
            bootstrap = role == Role.ADMIN and ev_type == EventType.ROLE_GRANTED and not await self.roles.any_admin()
            if Role.ADMIN not in granter_roles and not bootstrap:
                raise Unauthorized("only administrators can change this role", identity=granted_by)

        ev = await self._append(EventPayload(
            type=ev_type, actor=identity, data={"role": role.value, "granted_by": granted_by},
        ))
        self.roles.invalidate(identity)
        logger.info("%s %s for %s by %s", ev_type.value, role.value,
                    short_identity(identity), short_identity(granted_by))
        return ev

    # ---------- batches ----------
    async def mint_batch(self, request: CreateBatch, minter: str, today: Optional[date] = None) -> Batch:
        minter_roles = await self.roles.roles_for(minter, fresh=True) if is_valid_identity(minter) else frozenset()
        minter = validate_mint(
            request, minter, minter_roles,
            min_quantity=self.settings.min_quantity,
            max_quantity=self.settings.max_quantity,
            today=today,
        )
        data = request.model_dump(mode="json")
        ev = await self._append(EventPayload(type=EventType.BATCH_MINTED, actor=minter, data=data))
        logger.info("batch %s minted by %s", ev.batch_id, short_identity(minter))
        return batch_from_event(ev)

    async def _commit(self, batch_id: int, decide: Callable[..., Awaitable[StepPayload]]) -> ProvenanceStep:
        for attempt in (1, 2):
            state = await self.engine.reconstruct(batch_id, hydrate=False)
            step = await decide(state)
            try:
                ev = await self._append(step.to_event())
            except StaleRecord:
                if attempt == 2:
                    raise
                logger.info("batch %s changed during write, retrying once", batch_id)
                continue
            return step_from_event(ev)

    async def initialize(self, batch_id: int, producer: str, location: str = "", notes: str = "") -> ProvenanceStep:
        async def decide(state):
            return initialize(state.batch, state.record, producer, location, notes)
        return await self._commit(batch_id, decide)

    async def transfer(
        self,
        batch_id: int,
        from_identity: str,
        to_identity: str,
        next_state: SupplyState,
        location: str = "",
        notes: str = "",
        caller: Optional[str] = None,
    ) -> ProvenanceStep:
        async def decide(state):
            parties = [p for p in (from_identity, to_identity, caller) if is_valid_identity(p)]
            roles = await self.roles.snapshot(parties, fresh=True)
            return transfer(state.record, roles, from_identity, to_identity, next_state,
                            location, notes, caller=caller)
        return await self._commit(batch_id, decide)

    async def mark_consumed(self, batch_id: int, actor: str, location: str = "", notes: str = "") -> ProvenanceStep:
        async def decide(state):
            return mark_consumed(state.record, actor, location, notes)
        return await self._commit(batch_id, decide)

    async def verify_qr(self, data: str) -> BatchReconstruction:
        """Decode a scanned batch code and return the batch it points at."""
        payload = decode_qr(data)
        if payload is None or not payload["tokenId"].isdigit():
            raise ValidationError("not a valid batch verification code")
        return await self.engine.reconstruct(int(payload["tokenId"]))
