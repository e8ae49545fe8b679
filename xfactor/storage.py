"""Key-value store abstraction shared by links, ledgers and agent state.

Components never touch module globals; they receive a store instance and
perform read-modify-write cycles through it.  Markers that must be written
once and counters go through ``set_if_absent`` and ``incr``, which are atomic
in every backend.  The in-memory implementation
copies values on the way in and out so that callers observe the same
semantics as with an external store (mutating a fetched value does nothing
until it is written back).
"""

from __future__ import annotations

import fnmatch
from copy import deepcopy
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal async interface a persistence backend has to provide."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, *, ttl: Optional[float] = None) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def keys(self, pattern: str = "*") -> List[str]:
        ...

    async def set_if_absent(self, key: str, value: Any, *, ttl: Optional[float] = None) -> bool:
        """Store ``value`` only when ``key`` is unset; ``True`` when it was stored."""
        ...

    async def incr(self, key: str, amount: int = 1) -> int:
        ...


class InMemoryKeyValueStore:
    """Process-local store backed by a dict.

    ``ttl`` is accepted for interface compatibility and ignored: expiry of
    business records (links, ledgers) is decided by their owners.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}

    async def get(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        if value is None:
            return None
        return deepcopy(value)

    async def set(self, key: str, value: Any, *, ttl: Optional[float] = None) -> None:  # noqa: ARG002
        self._data[key] = deepcopy(value)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys(self, pattern: str = "*") -> List[str]:
        return [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]

    async def set_if_absent(self, key: str, value: Any, *, ttl: Optional[float] = None) -> bool:  # noqa: ARG002
        if key in self._data:
            return False
        self._data[key] = deepcopy(value)
        return True

    async def incr(self, key: str, amount: int = 1) -> int:
        self._data[key] = int(self._data.get(key) or 0) + amount
        return self._data[key]

    def __len__(self) -> int:
        return len(self._data)


__all__ = ["KeyValueStore", "InMemoryKeyValueStore"]
