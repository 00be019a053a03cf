"""Token store interface and the in-process implementation.

Production deployments swap in a transactional, access-controlled store
implementing the same methods.
"""

import threading
import zlib
from typing import Protocol

from aegis_engine.crypto.envelope import EncryptedEnvelope

DEFAULT_SHARDS = 16


class TokenStore(Protocol):
    def get(self, token: str) -> EncryptedEnvelope | None: ...

    def put(self, token: str, envelope: EncryptedEnvelope) -> bool:
        """Store under ``token``; False if the token is already taken."""
        ...

    def delete(self, token: str) -> bool: ...

    def replace(self, token: str, envelope: EncryptedEnvelope) -> bool:
        """Overwrite an existing entry; False if the token is gone."""
        ...

    def items(self) -> list[tuple[str, EncryptedEnvelope]]: ...


class InMemoryTokenStore:
    """Sharded dict store.

    Writes take the lock of the token's shard only; reads take no lock, so
    lookups of distinct tokens never wait on each other.
    """

    def __init__(self, shards: int = DEFAULT_SHARDS):
        self._shards: list[dict[str, EncryptedEnvelope]] = [{} for _ in range(shards)]
        self._locks = [threading.Lock() for _ in range(shards)]

    def _index(self, token: str) -> int:
        return zlib.crc32(token.encode()) % len(self._shards)

    def get(self, token: str) -> EncryptedEnvelope | None:
        return self._shards[self._index(token)].get(token)

    def put(self, token: str, envelope: EncryptedEnvelope) -> bool:
        idx = self._index(token)
        with self._locks[idx]:
            if token in self._shards[idx]:
                return False
            self._shards[idx][token] = envelope
            return True

    def replace(self, token: str, envelope: EncryptedEnvelope) -> bool:
        """Overwrite an existing entry (used when re-sealing under a new master key)."""
        idx = self._index(token)
        with self._locks[idx]:
            if token not in self._shards[idx]:
                return False
            self._shards[idx][token] = envelope
            return True

    def delete(self, token: str) -> bool:
        idx = self._index(token)
        with self._locks[idx]:
            return self._shards[idx].pop(token, None) is not None

    def items(self) -> list[tuple[str, EncryptedEnvelope]]:
        """Snapshot of every entry, taken one shard at a time."""
        snapshot: list[tuple[str, EncryptedEnvelope]] = []
        for shard, lock in zip(self._shards, self._locks):
            with lock:
                snapshot.extend(shard.items())
        return snapshot

    def __len__(self) -> int:
        return sum(len(shard) for shard in self._shards)
