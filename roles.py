import logging
from typing import Dict, FrozenSet, Iterable, Optional

from ledger import EventLogReader
from schemas import EventFilter, EventType, RawEvent, Role
from utils import normalize_identity

logger = logging.getLogger(__name__)

NO_ROLES: FrozenSet[Role] = frozenset()

ROLE_CAPABILITIES: Dict[Role, FrozenSet[str]] = {
    Role.PRODUCER: frozenset({"mint", "initialize", "ship", "sell"}),
    Role.CARRIER: frozenset({"receive_shipment", "deliver"}),
    Role.PURCHASER: frozenset({"buy", "resell", "consume"}),
    Role.ADMIN: frozenset({"override", "grant_roles"}),
}

# roles anyone may take on for themselves; admin must be granted
SELF_SERVICE_ROLES = frozenset({Role.PRODUCER, Role.CARRIER, Role.PURCHASER})


def capabilities_for(roles: Iterable[Role]) -> FrozenSet[str]:
    caps = set()
    for r in roles:
        caps |= ROLE_CAPABILITIES.get(r, NO_ROLES)
    return frozenset(caps)


def fold_roles(events: Iterable[RawEvent]) -> Dict[str, FrozenSet[Role]]:
    """Replay grant/revoke events (ledger order) into identity -> roles."""
    current: Dict[str, set] = {}
    for ev in sorted(events, key=lambda e: e.sequence):
        if ev.type not in (EventType.ROLE_GRANTED, EventType.ROLE_REVOKED) or not ev.actor:
            continue
        role = Role(ev.payload["role"])
        held = current.setdefault(ev.actor, set())
        if ev.type == EventType.ROLE_GRANTED:
            held.add(role)
        else:
            held.discard(role)
    return {k: frozenset(v) for k, v in current.items()}


class RoleCache:
    def __init__(self, reader: EventLogReader):
        self._reader = reader
        self._roles: Dict[str, FrozenSet[Role]] = {}
        self._complete = False

    def cached(self, identity: str) -> Optional[FrozenSet[Role]]:
        key = normalize_identity(identity)
        if key in self._roles:
            return self._roles[key]
        return NO_ROLES if self._complete else None

    def invalidate(self, identity: Optional[str] = None) -> None:
        self._complete = False
        if identity is None:
            self._roles.clear()
        else:
            self._roles.pop(normalize_identity(identity), None)

    async def refresh(self, identity: Optional[str] = None) -> FrozenSet[Role]:
        if identity is None:
            events = await self._reader.read(EventFilter())
            self._roles = fold_roles(events)
            self._complete = True
            logger.debug("role projection rebuilt for %d identities", len(self._roles))
            return NO_ROLES
        key = normalize_identity(identity)
        events = await self._reader.read(EventFilter(actor=key))
        roles = fold_roles(e for e in events if e.actor == key).get(key, NO_ROLES)
        self._roles[key] = roles
        return roles

    async def roles_for(self, identity: str, fresh: bool = False) -> FrozenSet[Role]:
        if not fresh:
            hit = self.cached(identity)
            if hit is not None:
                return hit
        return await self.refresh(identity)

    async def snapshot(self, identities: Iterable[str], fresh: bool = True) -> Dict[str, FrozenSet[Role]]:
        out = {}
        for identity in identities:
            if identity:
                out[normalize_identity(identity)] = await self.roles_for(identity, fresh=fresh)
        return out

    async def any_admin(self) -> bool:
        await self.refresh()
        return any(Role.ADMIN in roles for roles in self._roles.values())
