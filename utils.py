import hashlib
import json
import re
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional

GENESIS = "GENESIS"
QR_PROTOCOL = "greenledger"
QR_VERSION = "1.0"

_IDENTITY_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_QR_URI_RE = re.compile(r"^greenledger://1\.0/(\d+)#([a-f0-9]+)$")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat()


def compute_hash(prev_hash: str, payload: dict, timestamp: str) -> str:
    block = json.dumps({
        "prev_hash": prev_hash,
        "payload": payload,
        "timestamp": timestamp
    }, sort_keys=True)
    return hashlib.sha256(block.encode("utf-8")).hexdigest()


def verify_chain(events: List[Dict[str, Any]]) -> bool:
    prev = GENESIS
    for ev in events:
        expected = compute_hash(prev, ev["payload"], ev["timestamp"])
        if ev["hash"] != expected or ev["prev_hash"] != prev:
            return False
        prev = ev["hash"]
    return True


def event_ref_for(entry_hash: str) -> str:
    return "0x" + entry_hash[:64]


def is_valid_identity(identity: Optional[str]) -> bool:
    return bool(identity) and bool(_IDENTITY_RE.match(identity))


def normalize_identity(identity: str) -> str:
    return identity.lower()


def short_identity(identity: str) -> str:
    return f"{identity[:6]}...{identity[-4:]}"


# ---------- QR verification payloads ----------
def qr_checksum(value: str) -> str:
    h = 0
    for ch in value:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 1 << 32
    return format(abs(h), "x").rjust(8, "0")


def qr_payload(batch_id: int) -> Dict[str, str]:
    return {
        "protocol": QR_PROTOCOL,
        "version": QR_VERSION,
        "tokenId": str(batch_id),
        "checksum": qr_checksum(str(batch_id)),
    }


def encode_qr_uri(batch_id: int) -> str:
    p = qr_payload(batch_id)
    return f"{QR_PROTOCOL}://{QR_VERSION}/{p['tokenId']}#{p['checksum']}"


def decode_qr(data: str) -> Optional[Dict[str, str]]:
    """Accepts the JSON payload or the compact URI form; checksum must match."""
    try:
        parsed = json.loads(data)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        if parsed.get("protocol") != QR_PROTOCOL or parsed.get("version") != QR_VERSION:
            return None
        token_id, checksum = parsed.get("tokenId"), parsed.get("checksum")
    else:
        m = _QR_URI_RE.match(data.strip())
        if not m:
            return None
        token_id, checksum = m.group(1), m.group(2)
    if not token_id or checksum != qr_checksum(str(token_id)):
        return None
    return {"protocol": QR_PROTOCOL, "version": QR_VERSION, "tokenId": str(token_id), "checksum": checksum}
