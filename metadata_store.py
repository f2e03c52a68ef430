import asyncio
import hashlib
import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from config import Settings
from errors import (
    AllGatewaysFailed, GatewayError, GatewayTimeout, PayloadTooLarge,
    UploadFailed, UploadRejected, ValidationError,
)
from schemas import CropMetadata, MetadataAttribute, UploadBatchParams

logger = logging.getLogger(__name__)

IPFS_SCHEME = "ipfs://"
APP_TAG = "greenledger"

Validator = Callable[[bytes], Any]

_HASH_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


def parse_ref(ref: str) -> str:
    """``ipfs://<hash>`` or a bare hash -> bare hash."""
    if not isinstance(ref, str):
        raise ValidationError("content reference must be a string")
    h = ref[len(IPFS_SCHEME):] if ref.startswith(IPFS_SCHEME) else ref
    h = h.strip().strip("/")
    if not _HASH_RE.fullmatch(h):
        raise ValidationError("invalid content reference", ref=ref)
    return h


def to_uri(content_hash: str) -> str:
    return IPFS_SCHEME + parse_ref(content_hash)


def json_object(data: bytes) -> Dict[str, Any]:
    doc = json.loads(data)
    if not isinstance(doc, dict):
        raise ValueError("metadata is not a JSON object")
    return doc


def crop_metadata(data: bytes) -> CropMetadata:
    return CropMetadata.model_validate(json_object(data))


class TTLCache:
    """hash -> (bytes, fetched_at). Plain dict, last writer wins."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[bytes, float]] = {}

    def get(self, key: str) -> Optional[bytes]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        data, fetched_at = entry
        if self._clock() - fetched_at >= self._ttl:
            self._entries.pop(key, None)
            return None
        return data

    def put(self, key: str, data: bytes) -> None:
        self._entries[key] = (data, self._clock())

    def discard(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class LocalContentStore:
    """
    Development-only, in-process content store.

    Hashes carry a ``local-`` prefix so nothing stored here can be mistaken
    for pinned content.
    """
    PREFIX = "local-"

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    def put(self, data: bytes) -> str:
        h = self.PREFIX + hashlib.sha256(data).hexdigest()
        self._blobs[h] = bytes(data)
        return h

    def get(self, content_hash: str) -> Optional[bytes]:
        return self._blobs.get(content_hash)

    def __contains__(self, content_hash: str) -> bool:
        return content_hash in self._blobs


def build_metadata(params: UploadBatchParams, image_uri: str) -> CropMetadata:
    harvest_label = datetime.fromtimestamp(params.harvest_date, tz=timezone.utc).date().isoformat()
    attrs: List[MetadataAttribute] = [
        MetadataAttribute(trait_type="Crop Type", value=params.crop_type),
        MetadataAttribute(trait_type="Quantity (kg)", value=params.quantity),
    ]
    if params.price_per_kg:
        attrs.append(MetadataAttribute(trait_type="Price per kg (ETH)", value=params.price_per_kg))
    attrs.append(MetadataAttribute(trait_type="Origin Farm", value=params.origin_farm))
    attrs.append(MetadataAttribute(trait_type="Harvest Date", value=harvest_label))
    if params.notes:
        attrs.append(MetadataAttribute(trait_type="Notes", value=params.notes))
    if params.certifications:
        attrs.append(MetadataAttribute(trait_type="Certifications", value=", ".join(params.certifications)))
    if params.location and params.location.address:
        attrs.append(MetadataAttribute(trait_type="Location", value=params.location.address))
    return CropMetadata(
        name=params.name,
        description=params.description,
        image=image_uri,
        attributes=attrs,
        crop_type=params.crop_type,
        quantity=params.quantity,
        price_per_kg=params.price_per_kg,
        origin_farm=params.origin_farm,
        harvest_date=params.harvest_date,
        notes=params.notes,
        certifications=params.certifications,
        location=params.location,
    )


class MetadataStoreClient:
    def __init__(
        self,
        gateways: Sequence[str],
        api_key: Optional[str] = None,
        secret_api_key: Optional[str] = None,
        upload_endpoint: str = "https://api.pinata.cloud/pinning/pinFileToIPFS",
        gateway_timeout: float = 8.0,
        upload_timeout: float = 60.0,
        max_upload_bytes: int = 10 * 1024 * 1024,
        cache: Optional[TTLCache] = None,
        local_store: Optional[LocalContentStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._gateways = [g.rstrip("/") for g in gateways]
        self._api_key = api_key
        self._secret_api_key = secret_api_key
        self._upload_endpoint = upload_endpoint
        self._gateway_timeout = gateway_timeout
        self._upload_timeout = upload_timeout
        self._max_upload_bytes = max_upload_bytes
        self._cache = cache if cache is not None else TTLCache()
        self._local = local_store
        self._transport = transport

    @property
    def has_credentials(self) -> bool:
        return bool(self._api_key and self._secret_api_key)

    @property
    def mock_mode(self) -> bool:
        return self._local is not None and not self.has_credentials

    @property
    def gateways(self) -> List[str]:
        return list(self._gateways)

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("metadata cache cleared")

    def gateway_url(self, ref: str, gateway: Optional[str] = None) -> str:
        base = (gateway or (self._gateways[0] if self._gateways else "")).rstrip("/")
        return f"{base}/{parse_ref(ref)}"

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=timeout, follow_redirects=True)

    # ---------- upload ----------
    async def upload(self, data: bytes, kind: str, name: str = "blob") -> str:
        if len(data) > self._max_upload_bytes:
            raise PayloadTooLarge(
                f"payload of {len(data)} bytes exceeds {self._max_upload_bytes}", kind=kind
            )
        if self.mock_mode:
            h = self._local.put(data)
            logger.warning("stored %s in the local development store (not pinned): %s", kind, h)
            return h
        if not self.has_credentials:
            raise UploadRejected("storage credentials are not configured", kind=kind)

        pin_meta = json.dumps({
            "name": f"{APP_TAG}-{name}",
            "keyvalues": {
                "app": APP_TAG,
                "type": kind,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        })
        headers = {"pinata_api_key": self._api_key, "pinata_secret_api_key": self._secret_api_key}
        try:
            async with self._client(self._upload_timeout) as client:
                response = await client.post(
                    self._upload_endpoint,
                    headers=headers,
                    files={"file": (name, data, "application/octet-stream")},
                    data={"pinataMetadata": pin_meta},
                )
        except httpx.HTTPError as e:
            raise UploadFailed(f"upload transport error: {e}", kind=kind) from e

        if response.status_code in (401, 403):
            raise UploadRejected(f"storage rejected credentials (HTTP {response.status_code})", kind=kind)
        if response.status_code == 413:
            raise PayloadTooLarge("storage rejected payload size (HTTP 413)", kind=kind)
        if response.status_code >= 400:
            raise UploadFailed(f"upload failed with HTTP {response.status_code}", kind=kind)
        try:
            h = response.json()["IpfsHash"]
        except (ValueError, KeyError, TypeError) as e:
            raise UploadFailed("malformed upload response", kind=kind) from e
        return parse_ref(h)

    async def upload_json(self, document: Dict[str, Any], name: str = "metadata",
                          kind: str = "crop-batch-metadata") -> str:
        data = json.dumps(document).encode("utf-8")
        return await self.upload(data, kind=kind, name=name)

    async def upload_batch(self, params: UploadBatchParams, image: bytes, image_name: str = "image") -> str:
        """Image first, then the metadata document that points at it. Returns its URI."""
        image_hash = await self.upload(image, kind="crop-batch-image", name=image_name)
        metadata = build_metadata(params, to_uri(image_hash))
        meta_hash = await self.upload_json(
            metadata.model_dump(by_alias=True, exclude_none=True),
            name=f"metadata-{params.name}",
        )
        return to_uri(meta_hash)

    # ---------- fetch ----------
    async def fetch(self, ref: str, validate: Optional[Validator] = None) -> bytes:
        h = parse_ref(ref)

        cached = self._cache.get(h)
        if cached is not None:
            try:
                if validate:
                    validate(cached)
                return cached
            except ValueError:
                self._cache.discard(h)

        if self._local is not None:
            local = self._local.get(h)
            if local is not None:
                try:
                    if validate:
                        validate(local)
                except ValueError as e:
                    logger.warning("local store entry %s is malformed: %s", h, e)
                else:
                    self._cache.put(h, local)
                    return local

        last_error: Optional[Exception] = None
        async with self._client(self._gateway_timeout) as client:
            for gateway in self._gateways:
                try:
                    data = await asyncio.wait_for(
                        self._fetch_one(client, gateway, h, validate), self._gateway_timeout
                    )
                except asyncio.TimeoutError:
                    last_error = GatewayTimeout(f"{gateway} timed out", gateway=gateway)
                except (GatewayError, GatewayTimeout) as e:
                    last_error = e
                else:
                    self._cache.put(h, data)
                    logger.debug("fetched %s from %s", h, gateway)
                    return data
                logger.warning("gateway %s failed for %s: %s", gateway, h, last_error)

        logger.error("all gateways failed for %s", h)
        raise AllGatewaysFailed(
            f"all {len(self._gateways)} gateways failed for {h}: {last_error}",
            last_error=last_error,
            content_hash=h,
        )

    async def _fetch_one(self, client: httpx.AsyncClient, gateway: str, h: str,
                         validate: Optional[Validator]) -> bytes:
        try:
            response = await client.get(f"{gateway}/{h}", headers={"Accept": "application/json, */*"})
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"{gateway} timed out", gateway=gateway) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise GatewayError(f"{gateway}: {e}", gateway=gateway) from e
        if response.status_code != 200:
            raise GatewayError(f"{gateway}: HTTP {response.status_code}", gateway=gateway)
        data = response.content
        if validate:
            try:
                validate(data)
            except ValueError as e:
                raise GatewayError(f"{gateway}: malformed payload ({e})", gateway=gateway) from e
        return data

    async def fetch_json(self, ref: str) -> Dict[str, Any]:
        return json_object(await self.fetch(ref, validate=json_object))

    async def fetch_metadata(self, ref: str) -> CropMetadata:
        return crop_metadata(await self.fetch(ref, validate=crop_metadata))


def create_metadata_store(settings: Settings,
                          transport: Optional[httpx.AsyncBaseTransport] = None) -> MetadataStoreClient:
    local = None
    if not settings.has_storage_credentials:
        logger.warning(
            "no storage credentials configured: uploads go to the LOCAL DEVELOPMENT store and are not pinned"
        )
        local = LocalContentStore()
    return MetadataStoreClient(
        gateways=settings.gateways,
        api_key=settings.pinata_api_key,
        secret_api_key=settings.pinata_secret_api_key,
        upload_endpoint=settings.pin_file_endpoint,
        gateway_timeout=settings.gateway_timeout,
        upload_timeout=settings.upload_timeout,
        max_upload_bytes=settings.max_upload_bytes,
        cache=TTLCache(settings.cache_ttl_seconds),
        local_store=local,
        transport=transport,
    )
