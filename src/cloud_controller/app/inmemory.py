"""In-memory repository implementations for local development and tests.

These satisfy the protocol interfaces but store everything in dicts (no
persistence across restarts). Rows are stored as deep copies so callers
never share mutable state with the store, and every row has its own
``asyncio.Lock`` to model row-level locking.
"""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from typing import AsyncIterator, Generic, TypeVar

from .models import BindingKind, ServiceBinding, ServiceInstance

_Row = TypeVar("_Row", ServiceInstance, ServiceBinding)


class _InMemoryTable(Generic[_Row]):
    def __init__(self) -> None:
        self._rows: dict[str, _Row] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, guid: object) -> bool:
        return guid in self._rows

    async def find(self, guid: str) -> _Row | None:
        row = self._rows.get(guid)
        return copy.deepcopy(row) if row is not None else None

    async def save(self, row: _Row) -> _Row:
        self._rows[row.guid] = copy.deepcopy(row)
        return copy.deepcopy(row)

    async def delete(self, row: _Row) -> bool:
        return self._rows.pop(row.guid, None) is not None

    @asynccontextmanager
    async def lock_and_reload(self, guid: str) -> AsyncIterator[_Row | None]:
        """Hold ``guid``'s row lock; restore the row if the block raises."""
        lock = self._locks.setdefault(guid, asyncio.Lock())
        self._lock_users[guid] = self._lock_users.get(guid, 0) + 1
        try:
            async with lock:
                snapshot = self._rows.get(guid)
                try:
                    yield copy.deepcopy(snapshot) if snapshot is not None else None
                except BaseException:
                    if snapshot is None:
                        self._rows.pop(guid, None)
                    else:
                        self._rows[guid] = snapshot
                    raise
        finally:
            self._lock_users[guid] -= 1
            if not self._lock_users[guid]:
                del self._lock_users[guid]
                # Deleted rows drop their lock once no one is waiting on it.
                if guid not in self._rows:
                    self._locks.pop(guid, None)

    def all(self) -> list[_Row]:
        return [copy.deepcopy(row) for row in self._rows.values()]


class InMemoryServiceInstanceRepository(_InMemoryTable[ServiceInstance]):
    pass


class InMemoryServiceBindingRepository(_InMemoryTable[ServiceBinding]):
    async def list_for_instance(
        self,
        instance_guid: str,
        kind: BindingKind | None = None,
    ) -> list[ServiceBinding]:
        return [
            copy.deepcopy(b) for b in self._rows.values()
            if b.service_instance_guid == instance_guid
            and (kind is None or b.kind is kind)
        ]

    def count(self, kind: BindingKind | None = None) -> int:
        return sum(1 for b in self._rows.values() if kind is None or b.kind is kind)
