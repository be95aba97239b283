"""Persistence interface used by the engine, plus an in-memory implementation.

The surrounding application owns durability; the engine only needs the
asynchronous operations below. A session record is always written as a unit
together with its skipped-key entries.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .config import EngineConfig
from .double_ratchet import DoubleRatchetState, SkippedMessageKey


@dataclass(frozen=True)
class TrustedIdentityKey:
    peer: str
    identity_key: str
    trusted_at: float


@dataclass(frozen=True)
class GroupKey:
    room_id: str
    key_b64: str
    version: int
    created_at: float = 0.0


class SessionStore(ABC):

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    # ---- sessions ----

    @abstractmethod
    async def get_session(self, peer: str) -> Optional[DoubleRatchetState]: ...

    @abstractmethod
    async def save_session(self, peer: str, state: DoubleRatchetState) -> None: ...

    @abstractmethod
    async def delete_session(self, peer: str) -> None: ...

    # ---- skipped message keys ----

    @abstractmethod
    async def get_skipped_key(self, peer: str, ratchet_key: str, counter: int) -> Optional[SkippedMessageKey]: ...

    @abstractmethod
    async def save_skipped_key(self, peer: str, entry: SkippedMessageKey) -> None: ...

    @abstractmethod
    async def remove_skipped_key(self, peer: str, ratchet_key: str, counter: int) -> None: ...

    @abstractmethod
    async def clean_expired_skipped_keys(self, now: Optional[float] = None) -> int: ...

    # ---- trusted identity keys ----

    @abstractmethod
    async def get_trusted_key(self, peer: str) -> Optional[TrustedIdentityKey]: ...

    @abstractmethod
    async def save_trusted_key(self, peer: str, identity_key: str) -> None: ...

    # ---- group keys ----

    @abstractmethod
    async def get_group_key(self, room_id: str, version: Optional[int] = None) -> Optional[GroupKey]:
        """Latest version when ``version`` is None."""

    @abstractmethod
    async def get_group_keys(self, room_id: str) -> List[GroupKey]: ...

    @abstractmethod
    async def save_group_key(self, key: GroupKey) -> None: ...

    @abstractmethod
    async def delete_group_key(self, room_id: str, version: int) -> None: ...

    # ---- local key material ----

    @abstractmethod
    async def get_identity(self) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def save_identity(self, blob: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def get_signed_prekeys(self) -> Dict[int, Dict[str, Any]]: ...

    @abstractmethod
    async def save_signed_prekey(self, key_id: int, record: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def remove_signed_prekey(self, key_id: int) -> None: ...

    @abstractmethod
    async def get_one_time_prekey(self, key_id: int) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def list_one_time_prekeys(self) -> Dict[int, Dict[str, Any]]: ...

    @abstractmethod
    async def save_one_time_prekey(self, key_id: int, record: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def remove_one_time_prekey(self, key_id: int) -> None: ...

    @abstractmethod
    async def clear_all(self) -> None: ...

    def _new_state(self, record: Dict[str, Any], entries: List[SkippedMessageKey]) -> DoubleRatchetState:
        state = DoubleRatchetState.from_dict(
            record,
            max_skipped_keys=self.config.max_skipped_keys,
            skipped_key_max_age=self.config.skipped_key_max_age,
        )
        for entry in sorted(entries, key=lambda e: e.created_at):
            state.skipped.put(entry)
        return state


class MemorySessionStore(SessionStore):
    """Dict-backed store. Nothing survives the process."""

    def __init__(self, config: Optional[EngineConfig] = None):
        super().__init__(config)
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._skipped: Dict[Tuple[str, str, int], SkippedMessageKey] = {}
        self._trusted: Dict[str, TrustedIdentityKey] = {}
        self._group_keys: Dict[Tuple[str, int], GroupKey] = {}
        self._identity: Optional[Dict[str, Any]] = None
        self._signed_prekeys: Dict[int, Dict[str, Any]] = {}
        self._one_time_prekeys: Dict[int, Dict[str, Any]] = {}

    async def get_session(self, peer: str) -> Optional[DoubleRatchetState]:
        record = self._sessions.get(peer)
        if record is None:
            return None
        entries = [e for (p, _, _), e in self._skipped.items() if p == peer]
        return self._new_state(record, entries)

    async def save_session(self, peer: str, state: DoubleRatchetState) -> None:
        current = {(e.ratchet_key, e.counter) for e in state.skipped}
        for (p, rk, n) in list(self._skipped):
            if p == peer and (rk, n) not in current:
                await self.remove_skipped_key(peer, rk, n)
        for entry in state.skipped:
            if (peer, entry.ratchet_key, entry.counter) not in self._skipped:
                await self.save_skipped_key(peer, entry)
        self._sessions[peer] = state.to_dict(include_skipped=False)

    async def delete_session(self, peer: str) -> None:
        self._sessions.pop(peer, None)
        for key in [k for k in self._skipped if k[0] == peer]:
            del self._skipped[key]

    async def get_skipped_key(self, peer: str, ratchet_key: str, counter: int) -> Optional[SkippedMessageKey]:
        return self._skipped.get((peer, ratchet_key, counter))

    async def save_skipped_key(self, peer: str, entry: SkippedMessageKey) -> None:
        self._skipped[(peer, entry.ratchet_key, entry.counter)] = entry

    async def remove_skipped_key(self, peer: str, ratchet_key: str, counter: int) -> None:
        self._skipped.pop((peer, ratchet_key, counter), None)

    async def clean_expired_skipped_keys(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        cutoff = now - self.config.skipped_key_max_age
        stale = [k for k, e in self._skipped.items() if e.created_at < cutoff]
        for k in stale:
            del self._skipped[k]
        return len(stale)

    async def get_trusted_key(self, peer: str) -> Optional[TrustedIdentityKey]:
        return self._trusted.get(peer)

    async def save_trusted_key(self, peer: str, identity_key: str) -> None:
        self._trusted[peer] = TrustedIdentityKey(peer, identity_key, time.time())

    async def get_group_key(self, room_id: str, version: Optional[int] = None) -> Optional[GroupKey]:
        if version is not None:
            return self._group_keys.get((room_id, version))
        keys = await self.get_group_keys(room_id)
        return keys[-1] if keys else None

    async def get_group_keys(self, room_id: str) -> List[GroupKey]:
        return sorted((k for (r, _), k in self._group_keys.items() if r == room_id),
                      key=lambda k: k.version)

    async def save_group_key(self, key: GroupKey) -> None:
        self._group_keys[(key.room_id, key.version)] = key

    async def delete_group_key(self, room_id: str, version: int) -> None:
        self._group_keys.pop((room_id, version), None)

    async def get_identity(self) -> Optional[Dict[str, Any]]:
        return self._identity

    async def save_identity(self, blob: Dict[str, Any]) -> None:
        self._identity = blob

    async def get_signed_prekeys(self) -> Dict[int, Dict[str, Any]]:
        return dict(self._signed_prekeys)

    async def save_signed_prekey(self, key_id: int, record: Dict[str, Any]) -> None:
        self._signed_prekeys[key_id] = record

    async def remove_signed_prekey(self, key_id: int) -> None:
        self._signed_prekeys.pop(key_id, None)

    async def get_one_time_prekey(self, key_id: int) -> Optional[Dict[str, Any]]:
        return self._one_time_prekeys.get(key_id)

    async def list_one_time_prekeys(self) -> Dict[int, Dict[str, Any]]:
        return dict(self._one_time_prekeys)

    async def save_one_time_prekey(self, key_id: int, record: Dict[str, Any]) -> None:
        self._one_time_prekeys[key_id] = record

    async def remove_one_time_prekey(self, key_id: int) -> None:
        self._one_time_prekeys.pop(key_id, None)

    async def clear_all(self) -> None:
        self._sessions.clear()
        self._skipped.clear()
        self._trusted.clear()
        self._group_keys.clear()
        self._identity = None
        self._signed_prekeys.clear()
        self._one_time_prekeys.clear()
