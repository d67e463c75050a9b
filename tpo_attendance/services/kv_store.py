"""Key-value storage scoped to one browser/device.

The browser keeps its device fingerprint baseline and submission ledger in
local storage. Here the same entries live in a shared store (Redis in
deployment) under a namespace derived from the long-lived device cookie.
"""
from typing import Dict, Optional

import redis

class KeyValueStore:
    """Minimal string key-value interface."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def scoped(self, namespace: str) -> 'ScopedStore':
        """Return a view whose keys are prefixed with ``namespace``."""
        return ScopedStore(self, namespace)

class MemoryStore(KeyValueStore):
    """Process-local store used in tests and single-process development."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

class RedisStore(KeyValueStore):
    """Redis-backed store."""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> 'RedisStore':
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value: str) -> None:
        self.client.set(key, value)

    def delete(self, key: str) -> None:
        self.client.delete(key)

class ScopedStore(KeyValueStore):
    """Namespaced view over another store."""

    def __init__(self, backend: KeyValueStore, namespace: str):
        self.backend = backend
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f'{self.namespace}:{key}'

    def get(self, key: str) -> Optional[str]:
        return self.backend.get(self._key(key))

    def set(self, key: str, value: str) -> None:
        self.backend.set(self._key(key), value)

    def delete(self, key: str) -> None:
        self.backend.delete(self._key(key))
