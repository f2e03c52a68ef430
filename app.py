import io
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Request, Response, Query, UploadFile, File
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import qrcode

from config import get_settings
from database import engine
from errors import (
    AuthorizationError, NetworkError, NotInitialized, PayloadTooLarge,
    ProvenanceError, StateError, UnknownBatch, ValidationError,
)
from ledger import SqlLedger
from metadata_store import create_metadata_store, to_uri
from roles import capabilities_for
from service import ProvenanceService
import schemas
from schemas import (
    ConsumeBatch, InitializeProvenance, MintBatch, RoleChange, SupplyState, TransferBatch,
)
from utils import encode_qr_uri

# ---------- Config ----------
settings = get_settings()
BASE_URL = settings.base_url

app = FastAPI(title="Smart Farm TraceChain", version="0.2.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_service: Optional[ProvenanceService] = None


def get_service() -> ProvenanceService:
    global _service
    if _service is None:
        _service = ProvenanceService(SqlLedger(engine), create_metadata_store(settings), settings)
    return _service


# ---------- Errors ----------
_STATUS = (
    (PayloadTooLarge, 413),
    (UnknownBatch, 404),
    (NotInitialized, 404),
    (ValidationError, 422),
    (AuthorizationError, 403),
    (StateError, 409),
    (NetworkError, 503),
)


@app.exception_handler(ProvenanceError)
async def provenance_error_handler(request: Request, exc: ProvenanceError):
    status = next((code for cls, code in _STATUS if isinstance(exc, cls)), 400)
    return JSONResponse(status_code=status, content=exc.to_dict())


# ---------- Roles ----------
@app.post("/api/roles/grant")
async def grant_role(body: RoleChange, svc: ProvenanceService = Depends(get_service)):
    ev = await svc.grant_role(body.identity, body.role, body.granted_by)
    return {"status": "ok", "event_ref": ev.event_ref}


@app.post("/api/roles/revoke")
async def revoke_role(body: RoleChange, svc: ProvenanceService = Depends(get_service)):
    ev = await svc.revoke_role(body.identity, body.role, body.granted_by)
    return {"status": "ok", "event_ref": ev.event_ref}


@app.get("/api/roles/{identity}")
async def get_roles(identity: str, refresh: bool = False, svc: ProvenanceService = Depends(get_service)):
    roles = await svc.roles.roles_for(identity, fresh=refresh)
    return {
        "identity": identity.lower(),
        "roles": sorted(r.value for r in roles),
        "capabilities": sorted(capabilities_for(roles)),
    }


# ---------- Batches ----------
@app.post("/api/batches", response_model=schemas.Batch)
async def mint_batch(body: MintBatch, svc: ProvenanceService = Depends(get_service)):
    request = schemas.CreateBatch(**body.model_dump(exclude={"minter"}))
    return await svc.mint_batch(request, body.minter)


@app.get("/api/batches", response_model=schemas.Catalog)
async def list_batches(
    state: Optional[SupplyState] = Query(None, description="only batches currently in this state"),
    svc: ProvenanceService = Depends(get_service),
):
    return await svc.engine.catalog(state=state)


@app.get("/api/batches/{batch_id}", response_model=schemas.BatchReconstruction)
async def get_batch(batch_id: int, svc: ProvenanceService = Depends(get_service)):
    return await svc.engine.reconstruct(batch_id)


@app.get("/api/batches/{batch_id}/record", response_model=schemas.ProvenanceRecord)
async def get_record(batch_id: int, svc: ProvenanceService = Depends(get_service)):
    await svc.engine.get_batch(batch_id)
    record = await svc.engine.get_record(batch_id)
    if record is None:
        raise NotInitialized(f"batch {batch_id} has no provenance yet", batch_id=batch_id)
    return record


@app.get("/api/batches/{batch_id}/history", response_model=list[schemas.ProvenanceStep])
async def get_history(batch_id: int, svc: ProvenanceService = Depends(get_service)):
    await svc.engine.get_batch(batch_id)
    return await svc.engine.get_history(batch_id)


@app.post("/api/batches/{batch_id}/provenance", response_model=schemas.ProvenanceStep)
async def initialize_provenance(batch_id: int, body: InitializeProvenance,
                                svc: ProvenanceService = Depends(get_service)):
    return await svc.initialize(batch_id, body.producer, body.location, body.notes)


@app.post("/api/batches/{batch_id}/transfer", response_model=schemas.ProvenanceStep)
async def transfer_batch(batch_id: int, body: TransferBatch, svc: ProvenanceService = Depends(get_service)):
    return await svc.transfer(batch_id, body.from_identity, body.to_identity, body.next_state,
                              body.location, body.notes, caller=body.caller)


@app.post("/api/batches/{batch_id}/consume", response_model=schemas.ProvenanceStep)
async def consume_batch(batch_id: int, body: ConsumeBatch, svc: ProvenanceService = Depends(get_service)):
    return await svc.mark_consumed(batch_id, body.actor, body.location, body.notes)


@app.get("/api/batches/{batch_id}/verify", response_model=schemas.ChainStatus)
async def verify_ledger(batch_id: int, svc: ProvenanceService = Depends(get_service)):
    await svc.engine.get_batch(batch_id)
    if not isinstance(svc.ledger, SqlLedger):
        raise HTTPException(status_code=501, detail="ledger does not expose its hash chain")
    return await svc.ledger.verify()


@app.get("/api/batches/{batch_id}/qrcode")
async def batch_qrcode(
    batch_id: int,
    link: bool = Query(False, description="encode an API link instead of the verification payload"),
    svc: ProvenanceService = Depends(get_service),
):
    await svc.engine.get_batch(batch_id)
    content = f"{BASE_URL}/api/batches/{batch_id}" if link else encode_qr_uri(batch_id)
    img = qrcode.make(content)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return Response(content=buf.getvalue(), media_type="image/png")


@app.get("/api/verify", response_model=schemas.BatchReconstruction)
async def verify_qr(qr: str = Query(..., description="scanned batch verification code"),
                    svc: ProvenanceService = Depends(get_service)):
    return await svc.verify_qr(qr)


@app.get("/api/actors/{actor}/batches")
async def actor_batches(actor: str, svc: ProvenanceService = Depends(get_service)):
    return {"actor": actor.lower(), "batch_ids": await svc.engine.batches_for_actor(actor)}


# ---------- Metadata ----------
@app.post("/api/metadata")
async def upload_metadata(file: UploadFile = File(...), kind: str = Query("crop-batch-image"),
                          svc: ProvenanceService = Depends(get_service)):
    data = await file.read()
    h = await svc.metadata.upload(data, kind=kind, name=file.filename or "upload")
    mock = svc.metadata.mock_mode
    return {
        "hash": h,
        "uri": to_uri(h),
        "gateway_url": None if mock else svc.metadata.gateway_url(h),
        "mock": mock,
    }


@app.get("/api/metadata/{content_hash}")
async def fetch_metadata(content_hash: str, svc: ProvenanceService = Depends(get_service)):
    data = await svc.metadata.fetch(content_hash)
    return Response(content=data, media_type="application/octet-stream")
