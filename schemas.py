from datetime import date
from enum import Enum
from typing import Optional, Any, Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    PRODUCER = "producer"
    CARRIER = "carrier"
    PURCHASER = "purchaser"
    ADMIN = "admin"


class SupplyState(str, Enum):
    PRODUCED = "produced"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CONSUMED = "consumed"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()

    @property
    def is_terminal(self) -> bool:
        return self is SupplyState.CONSUMED


_STATE_ORDER = [
    SupplyState.PRODUCED,
    SupplyState.IN_TRANSIT,
    SupplyState.DELIVERED,
    SupplyState.CONSUMED,
]


class EventType(str, Enum):
    BATCH_MINTED = "BatchMinted"
    PROVENANCE_STEP = "ProvenanceStep"
    ROLE_GRANTED = "RoleGranted"
    ROLE_REVOKED = "RoleRevoked"


# ---------- ledger ----------
class RawEvent(BaseModel):
    """An event as read back from the ledger."""
    model_config = ConfigDict(frozen=True)

    sequence: int
    type: EventType
    batch_id: Optional[int] = None
    actor: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str
    event_ref: str
    prev_hash: str = ""
    hash: str = ""


class EventFilter(BaseModel):
    event_type: Optional[EventType] = None
    batch_id: Optional[int] = None
    actor: Optional[str] = None


class EventPayload(BaseModel):
    """An event to be appended to the ledger."""
    type: EventType
    batch_id: Optional[int] = None
    actor: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[str] = None


# ---------- batches ----------
class CreateBatch(BaseModel):
    crop_type: str = Field(..., min_length=1, max_length=100)
    quantity: int
    origin_farm: str = Field(..., min_length=1, max_length=255)
    harvest_date: date
    notes: str = ""
    metadata_ref: str


class Batch(BaseModel):
    id: int
    minter: str
    crop_type: str
    quantity: int
    origin_farm: str
    harvest_date: date
    notes: str = ""
    metadata_ref: str
    creation_time: str
    sequence: int
    event_ref: str


class ProvenanceStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_id: int
    actor: str
    state: SupplyState
    timestamp: str
    location: str = ""
    notes: str = ""
    event_ref: str
    sequence: int
    submitted_by: Optional[str] = None


class ProvenanceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_id: int
    original_producer: str
    creation_time: str
    current_state: SupplyState
    current_owner: str
    total_steps: int


class StepPayload(BaseModel):
    """A provenance step decided by the state machine, not yet on the ledger."""
    model_config = ConfigDict(frozen=True)

    batch_id: int
    actor: str
    state: SupplyState
    location: str = ""
    notes: str = ""
    submitted_by: str
    previous_owner: Optional[str] = None
    expected_steps: int = 0
    expected_owner: Optional[str] = None

    def to_event(self, timestamp: Optional[str] = None) -> EventPayload:
        return EventPayload(
            type=EventType.PROVENANCE_STEP,
            batch_id=self.batch_id,
            actor=self.actor,
            timestamp=timestamp,
            data={
                "state": self.state.value,
                "location": self.location,
                "notes": self.notes,
                "submitted_by": self.submitted_by,
                "previous_owner": self.previous_owner,
                "expected_steps": self.expected_steps,
                "expected_owner": self.expected_owner,
            },
        )


# ---------- metadata ----------
class MetadataAttribute(BaseModel):
    trait_type: str
    value: Any


class GeoLocation(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None


class CropMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = ""
    description: str = ""
    image: str = ""
    attributes: List[MetadataAttribute] = Field(default_factory=list)
    crop_type: str = Field("", alias="cropType")
    quantity: Optional[int] = None
    price_per_kg: Optional[float] = Field(None, alias="pricePerKg")
    origin_farm: str = Field("", alias="originFarm")
    harvest_date: Optional[int] = Field(None, alias="harvestDate")  # unix seconds
    notes: str = ""
    certifications: Optional[List[str]] = None
    location: Optional[GeoLocation] = None


class UploadBatchParams(BaseModel):
    name: str
    description: str = ""
    crop_type: str
    quantity: int
    price_per_kg: Optional[float] = None
    origin_farm: str
    harvest_date: int
    notes: str = ""
    certifications: Optional[List[str]] = None
    location: Optional[GeoLocation] = None


DESCRIPTIVE_FIELDS: Tuple[str, ...] = ("name", "description", "image", "attributes")


class PartialFailure(BaseModel):
    batch_id: int
    missing_fields: List[str]
    reason: str


class BatchReconstruction(BaseModel):
    batch: Batch
    record: Optional[ProvenanceRecord] = None
    steps: List[ProvenanceStep] = Field(default_factory=list)
    metadata: Optional[CropMetadata] = None
    partial: Optional[PartialFailure] = None

    @property
    def initialized(self) -> bool:
        return self.record is not None


class CatalogEntry(BaseModel):
    batch: Batch
    record: Optional[ProvenanceRecord] = None
    metadata: Optional[CropMetadata] = None
    partial: Optional[PartialFailure] = None


class Catalog(BaseModel):
    entries: List[CatalogEntry]
    total: int

    @property
    def degraded(self) -> List[PartialFailure]:
        return [e.partial for e in self.entries if e.partial is not None]


# ---------- API bodies ----------
class RoleChange(BaseModel):
    identity: str
    role: Role
    granted_by: str


class MintBatch(CreateBatch):
    minter: str


class InitializeProvenance(BaseModel):
    producer: str
    location: str = ""
    notes: str = ""


class TransferBatch(BaseModel):
    from_identity: str
    to_identity: str
    next_state: SupplyState
    location: str = ""
    notes: str = ""
    caller: Optional[str] = None


class ConsumeBatch(BaseModel):
    actor: str
    location: str = ""
    notes: str = ""


class ChainStatus(BaseModel):
    verified: bool
    events: int
