"""Optimistic concurrency for invoice and conversion records.

Every record carries an integer ``row_version``. Writers state the version
they read; the store applies the change only if that version is still
current and increments it in the same step. A mismatch means another
request won the race, and the caller must reload.

Two stores implement the RecordStore protocol: an in-process dictionary for
tests and single-process use, and Redis (WATCH/MULTI) for the API and the
workers.
"""

import asyncio
import copy
import json
import logging
from typing import Any, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from einvoice.shared.errors import OptimisticLockError, StorageError, ValidationError

logger = logging.getLogger(__name__)

VERSION_FIELD = "row_version"


class RecordStore(Protocol):
    """Minimal record persistence used by the conversion pipeline."""

    async def get(self, table: str, row_id: str) -> dict[str, Any] | None: ...

    async def insert(self, table: str, row_id: str, data: dict[str, Any]) -> dict[str, Any]: ...

    async def conditional_update(
        self, table: str, row_id: str, expected_version: int, data: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Apply ``data`` if the stored version equals ``expected_version``.

        Returns:
            The updated record (version incremented), or None if no row matched
        """
        ...


class InMemoryRecordStore:
    """Dictionary-backed store guarded by an asyncio lock."""

    def __init__(self) -> None:
        self._rows: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        async with self._lock:
            row = self._rows.get((table, row_id))
            return copy.deepcopy(row) if row is not None else None

    async def insert(self, table: str, row_id: str, data: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            if (table, row_id) in self._rows:
                raise StorageError(f"Row {row_id} already exists in {table}")
            row = {**copy.deepcopy(data), "id": row_id, VERSION_FIELD: 1}
            self._rows[(table, row_id)] = row
            return copy.deepcopy(row)

    async def conditional_update(
        self, table: str, row_id: str, expected_version: int, data: dict[str, Any]
    ) -> dict[str, Any] | None:
        async with self._lock:
            row = self._rows.get((table, row_id))
            if row is None or row.get(VERSION_FIELD) != expected_version:
                return None
            updated = {**row, **copy.deepcopy(data), VERSION_FIELD: expected_version + 1}
            self._rows[(table, row_id)] = updated
            return copy.deepcopy(updated)


class RedisRecordStore:
    """Records stored as JSON strings under ``record:{table}:{id}``.

    conditional_update uses WATCH/MULTI: the transaction is discarded when
    another client touches the key between the read and the write, which is
    reported as a version conflict.
    """

    def __init__(self, redis: Redis, ttl_seconds: int | None = None) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    @staticmethod
    def key(table: str, row_id: str) -> str:
        return f"record:{table}:{row_id}"

    async def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        raw = await self._redis.get(self.key(table, row_id))
        if raw is None:
            return None
        record: dict[str, Any] = json.loads(raw)
        return record

    async def insert(self, table: str, row_id: str, data: dict[str, Any]) -> dict[str, Any]:
        row = {**data, "id": row_id, VERSION_FIELD: 1}
        created = await self._redis.set(
            self.key(table, row_id), json.dumps(row), nx=True, ex=self._ttl
        )
        if not created:
            raise StorageError(f"Row {row_id} already exists in {table}")
        return row

    async def conditional_update(
        self, table: str, row_id: str, expected_version: int, data: dict[str, Any]
    ) -> dict[str, Any] | None:
        key = self.key(table, row_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None:
                    return None
                row = json.loads(raw)
                if row.get(VERSION_FIELD) != expected_version:
                    return None
                updated = {**row, **data, VERSION_FIELD: expected_version + 1}
                pipe.multi()
                pipe.set(key, json.dumps(updated), ex=self._ttl)
                await pipe.execute()
                return updated
            except WatchError:
                logger.info(f"Concurrent write detected on {key}")
                return None


async def update_with_version(
    store: RecordStore,
    table: str,
    row_id: str,
    expected_version: int,
    data: dict[str, Any],
) -> dict[str, Any]:
    """Update a record if nobody else changed it since it was read.

    Args:
        store: Record store
        table: Logical table name (e.g. 'invoices', 'conversions')
        row_id: Record ID
        expected_version: row_version the caller read
        data: Fields to change; must not contain row_version

    Returns:
        Updated record with the incremented row_version

    Raises:
        ValidationError: If data tries to set row_version
        OptimisticLockError: If the stored version differs (or the row is gone)
        StorageError: If the store fails for any other reason
    """
    if VERSION_FIELD in data:
        raise ValidationError(
            f"{VERSION_FIELD} is managed by the store and cannot be updated directly",
            details={"table": table, "id": row_id},
        )

    try:
        updated = await store.conditional_update(table, row_id, expected_version, data)
    except (RedisError, OSError) as e:
        logger.error(f"Update of {table} row {row_id} failed: {e}")
        raise StorageError(f"Failed to update {table} row {row_id}: {e}") from e

    if updated is None:
        logger.warning(
            f"Optimistic lock conflict on {table} row {row_id} (expected v{expected_version})"
        )
        raise OptimisticLockError(table, row_id, expected_version)
    return updated
