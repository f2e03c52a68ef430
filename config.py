import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

DEFAULT_GATEWAYS = (
    "https://ipfs.io/ipfs",
    "https://gateway.pinata.cloud/ipfs",
    "https://cloudflare-ipfs.com/ipfs",
    "https://dweb.link/ipfs",
    "https://cf-ipfs.com/ipfs",
    "https://ipfs.filebase.io/ipfs",
    "https://4everland.io/ipfs",
)


def _gateways_from_env() -> Tuple[str, ...]:
    primary = os.getenv("IPFS_GATEWAY")
    extra = os.getenv("IPFS_FALLBACK_GATEWAYS")
    gateways = [g.strip().rstrip("/") for g in extra.split(",")] if extra else list(DEFAULT_GATEWAYS)
    if primary:
        gateways.insert(0, primary.rstrip("/"))
    # keep order, drop duplicates
    seen = []
    for g in gateways:
        if g and g not in seen:
            seen.append(g)
    return tuple(seen)


@dataclass(frozen=True)
class Settings:
    base_url: str = "http://localhost:8000"
    database_url: str = "sqlite:///./tracechain.db"

    # storage network
    pinata_api_key: Optional[str] = None
    pinata_secret_api_key: Optional[str] = None
    pin_file_endpoint: str = "https://api.pinata.cloud/pinning/pinFileToIPFS"
    gateways: Tuple[str, ...] = field(default_factory=lambda: DEFAULT_GATEWAYS)
    gateway_timeout: float = 8.0
    upload_timeout: float = 60.0
    cache_ttl_seconds: float = 300.0
    max_upload_bytes: int = 10 * 1024 * 1024

    # ledger
    ledger_retries: int = 3
    ledger_backoff: float = 0.2
    ledger_scan_chunk: int = 500

    # batches
    min_quantity: int = 1
    max_quantity: int = 100
    catalog_concurrency: int = 8

    @property
    def has_storage_credentials(self) -> bool:
        return bool(self.pinata_api_key and self.pinata_secret_api_key)


def get_settings() -> Settings:
    return Settings(
        base_url=os.getenv("BASE_URL", "http://localhost:8000"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./tracechain.db"),
        pinata_api_key=os.getenv("PINATA_API_KEY") or None,
        pinata_secret_api_key=os.getenv("PINATA_SECRET_API_KEY") or None,
        pin_file_endpoint=os.getenv(
            "IPFS_ENDPOINT", "https://api.pinata.cloud/pinning/pinFileToIPFS"
        ),
        gateways=_gateways_from_env(),
        gateway_timeout=float(os.getenv("IPFS_GATEWAY_TIMEOUT", "8")),
        cache_ttl_seconds=float(os.getenv("METADATA_CACHE_TTL", "300")),
        max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024))),
        ledger_retries=int(os.getenv("LEDGER_RETRIES", "3")),
        ledger_backoff=float(os.getenv("LEDGER_BACKOFF", "0.2")),
        ledger_scan_chunk=int(os.getenv("LEDGER_SCAN_CHUNK", "500")),
        max_quantity=int(os.getenv("MAX_QUANTITY", "100")),
        catalog_concurrency=int(os.getenv("CATALOG_CONCURRENCY", "8")),
    )
