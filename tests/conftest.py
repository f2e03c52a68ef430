import asyncio
import hashlib
from datetime import date

import httpx
import pytest

from config import Settings
from database import make_engine
from ledger import SqlLedger
from metadata_store import LocalContentStore, MetadataStoreClient, TTLCache
from schemas import (
    CreateBatch, EventPayload, EventType, ProvenanceRecord, ProvenanceStep, Role,
    StepPayload, SupplyState,
)

PRODUCER = "0x" + "a1" * 20
CARRIER = "0x" + "b2" * 20
BUYER = "0x" + "c3" * 20
BUYER2 = "0x" + "d4" * 20
ADMIN = "0x" + "e5" * 20
STRANGER = "0x" + "f6" * 20

ROLES = {
    PRODUCER: frozenset({Role.PRODUCER}),
    CARRIER: frozenset({Role.CARRIER}),
    BUYER: frozenset({Role.PURCHASER}),
    BUYER2: frozenset({Role.PURCHASER}),
    ADMIN: frozenset({Role.ADMIN}),
    STRANGER: frozenset(),
}


def run(coro):
    return asyncio.run(coro)


def record(state=SupplyState.PRODUCED, owner=PRODUCER, steps=1, batch_id=1):
    return ProvenanceRecord(
        batch_id=batch_id,
        original_producer=PRODUCER,
        creation_time="2025-08-15T00:00:00",
        current_state=state,
        current_owner=owner,
        total_steps=steps,
    )


def step_from_payload(payload: StepPayload, sequence: int, timestamp: str = "2025-08-15T00:00:00"):
    return ProvenanceStep(
        batch_id=payload.batch_id,
        actor=payload.actor,
        state=payload.state,
        timestamp=timestamp,
        location=payload.location,
        notes=payload.notes,
        event_ref=f"0x{sequence:064x}",
        sequence=sequence,
        submitted_by=payload.submitted_by,
    )


def crop_doc(name="Hydro Lettuce"):
    return {
        "name": name,
        "description": "fresh",
        "image": "ipfs://QmImage",
        "attributes": [{"trait_type": "Crop Type", "value": name}],
        "cropType": name,
        "quantity": 10,
        "originFarm": "Baan Mae Rim Farm",
    }


def mint_request(metadata_ref="ipfs://QmMeta", quantity=10, harvest=date(2025, 8, 15)):
    return CreateBatch(
        crop_type="Hydro Lettuce",
        quantity=quantity,
        origin_farm="Baan Mae Rim Farm",
        harvest_date=harvest,
        notes="",
        metadata_ref=metadata_ref,
    )


def mint_event(minter=PRODUCER, metadata_ref="ipfs://QmMeta"):
    return EventPayload(
        type=EventType.BATCH_MINTED,
        actor=minter,
        data=mint_request(metadata_ref).model_dump(mode="json"),
    )


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class Gateways:
    """MockTransport handler: per-gateway behaviour plus a log of every request."""

    def __init__(self, content=None):
        self.content = dict(content or {})
        self.behaviour = {}
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        h = request.url.path.rsplit("/", 1)[-1]
        self.calls.append((host, h))
        mode = self.behaviour.get(host, "ok")
        if mode == "down":
            raise httpx.ConnectError("connection refused", request=request)
        if mode == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if mode == "error":
            return httpx.Response(500)
        if mode == "garbage":
            return httpx.Response(200, content=b"<html>not json</html>")
        if h not in self.content:
            return httpx.Response(404)
        return httpx.Response(200, content=self.content[h])


def multipart_file(request: httpx.Request) -> bytes:
    body = request.read()
    boundary = request.headers["content-type"].split("boundary=")[1].encode()
    for part in body.split(b"--" + boundary):
        if b'name="file"' in part:
            _, _, data = part.partition(b"\r\n\r\n")
            return data[:-2]
    raise AssertionError("no file part")


class PinningService:
    """Pinning endpoint plus gateway backed by the same dict."""

    def __init__(self):
        self.blobs = {}
        self.status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            if self.status != 200:
                return httpx.Response(self.status, json={"error": "nope"})
            data = multipart_file(request)
            h = "Qm" + hashlib.sha256(data).hexdigest()[:44]
            self.blobs[h] = data
            return httpx.Response(200, json={"IpfsHash": h, "PinSize": len(data)})
        h = request.url.path.rsplit("/", 1)[-1]
        if h in self.blobs:
            return httpx.Response(200, content=self.blobs[h])
        return httpx.Response(404)


GATEWAYS = ("https://gw-a.test/ipfs", "https://gw-b.test/ipfs", "https://gw-c.test/ipfs")


@pytest.fixture
def settings():
    return Settings(gateways=GATEWAYS, ledger_backoff=0.0, ledger_scan_chunk=7)


@pytest.fixture
def ledger(tmp_path):
    return SqlLedger(make_engine(f"sqlite:///{tmp_path / 'ledger.db'}"))


@pytest.fixture
def local_metadata():
    return MetadataStoreClient(gateways=(), local_store=LocalContentStore(), cache=TTLCache(300))
