# recordsync/database.py - SQLite-backed data source

import json
import time
import aiosqlite
from typing import List, Dict, Any, Optional
from datetime import datetime
import logging

from recordsync_config import settings
from recordsync_errors import TransportError
from recordsync_datasource import (
    DataSource, apply_filter, apply_sort, coerce_entity, make_query_key, rejected, slice_page,
)
from recordsync_models import (
    ConflictResult, EntityRef, MutateResult, OpResult, OperationType, PendingOp, QueryResult, QuerySpec,
)

logger = logging.getLogger(__name__)

class SqliteDataSource(DataSource):
    """Entities persisted as JSON rows with an integer version column.

    Updates and deletes are compare-and-swap statements on the version
    column, so concurrent writers through separate connections still get
    conflicts instead of lost updates.
    """

    def __init__(self, database_url: str = settings.DATABASE_URL, entity_type: str = settings.DEFAULT_ENTITY_TYPE,
                 key_field: str = settings.DEFAULT_KEY_FIELD, version_field: str = settings.DEFAULT_VERSION_FIELD):
        super().__init__()
        self.database_url = database_url
        self.conn: Optional[aiosqlite.Connection] = None
        self._entity_type = entity_type
        self._key_field = key_field
        self._version_field = version_field

    async def open(self):
        """Initialize database connection and create tables"""
        if self.conn is not None:
            return
        self.conn = await aiosqlite.connect(self.database_url.replace("sqlite:///", ""))

        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS entities (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_type TEXT NOT NULL,
                id TEXT NOT NULL,
                data TEXT NOT NULL,
                version INTEGER DEFAULT 1,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (entity_type, id)
            )
        """)

        await self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_entities_type
            ON entities(entity_type, seq)
        """)

        await self.conn.commit()
        logger.info(f"SQLite data source opened: {self.database_url}")

    async def close(self):
        """Close database connection"""
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def _ensure_open(self) -> aiosqlite.Connection:
        if self.conn is None:
            await self.open()
        return self.conn

    async def seed(self, entity_type: str, records: List[Any]) -> int:
        """Insert records as version 1 rows; returns how many were written"""
        conn = await self._ensure_open()
        for index, item in enumerate(records):
            record = coerce_entity(item, index, self._key_field, self._version_field)
            record.pop(self._version_field, None)
            record_id = record.get(self._key_field)
            if record_id is None:
                record_id = await self._next_id(entity_type)
                record[self._key_field] = record_id
            await conn.execute(
                """INSERT INTO entities (entity_type, id, data, version, updated_at)
                   VALUES (?, ?, ?, 1, ?)""",
                (entity_type, str(record_id), json.dumps(record), datetime.utcnow().isoformat())
            )
        await conn.commit()
        return len(records)

    async def _next_id(self, entity_type: str) -> str:
        async with self.conn.execute(
            "SELECT COALESCE(MAX(seq), 0) + 1 FROM entities"
        ) as cursor:
            row = await cursor.fetchone()
        candidate = row[0]
        while await self._get_row(entity_type, str(candidate)) is not None:
            candidate += 1
        return str(candidate)

    async def _get_row(self, entity_type: str, record_id: str) -> Optional[Dict[str, Any]]:
        async with self.conn.execute(
            "SELECT id, data, version FROM entities WHERE entity_type = ? AND id = ?",
            (entity_type, record_id)
        ) as cursor:
            row = await cursor.fetchone()
        return self._parse_row(row) if row else None

    def _parse_row(self, row) -> Dict[str, Any]:
        """Parse SQLite entity row"""
        record = json.loads(row[1])
        if record.get(self._key_field) is None:
            record[self._key_field] = row[0]
        record[self._version_field] = str(row[2])
        return record

    async def query(self, spec: QuerySpec) -> QueryResult:
        conn = await self._ensure_open()
        entity_type = spec.entityType or self._entity_type

        async with conn.execute(
            "SELECT id, data, version FROM entities WHERE entity_type = ? ORDER BY seq ASC",
            (entity_type,)
        ) as cursor:
            rows = await cursor.fetchall()

        records = [self._parse_row(row) for row in rows]
        matched = apply_sort(apply_filter(records, spec.filter), spec.sort)
        items, page_info = slice_page(matched, spec.page)
        page_info.totalCount = len(matched)

        return QueryResult(
            entities={entity_type: items},
            result=[EntityRef(type=entity_type, id=str(r[self._key_field])) for r in items],
            pageInfo=page_info,
            meta={"resource": spec.resource, "queryKey": make_query_key(spec), "fetchedAt": time.time()},
        )

    async def mutate(self, ops: List[PendingOp], view_meta: Any = None) -> MutateResult:
        conn = await self._ensure_open()
        result = MutateResult(meta={"mutatedAt": time.time()})

        try:
            for op in ops:
                entity_type = op.entity.type or self._entity_type
                outcome = await self._apply_operation(conn, op, entity_type)
                if isinstance(outcome, ConflictResult):
                    result.conflicts.append(outcome)
                elif outcome.status == "rejected":
                    result.rejected.append(outcome)
                else:
                    result.applied.append(outcome)
                    if op.type != OperationType.DELETE:
                        record_id = outcome.serverId or op.entity.id
                        latest = await self._get_row(entity_type, record_id)
                        result.entities.setdefault(entity_type, []).append(latest)
            await conn.commit()
        except aiosqlite.Error as e:
            logger.error(f"SQLite mutate failed: {e}")
            await conn.rollback()
            raise TransportError(f"SQLite mutate failed: {e}") from e

        return result

    async def _apply_operation(self, conn: aiosqlite.Connection, op: PendingOp, entity_type: str):
        """Apply a single operation to the database"""
        if op.type == OperationType.CREATE:
            data = dict(op.data or {})
            data.pop(self._version_field, None)
            record_id = data.get(self._key_field)
            if record_id is None:
                record_id = await self._next_id(entity_type)
                data[self._key_field] = record_id
            try:
                await conn.execute(
                    """INSERT INTO entities (entity_type, id, data, version, updated_at)
                       VALUES (?, ?, ?, 1, ?)""",
                    (entity_type, str(record_id), json.dumps(data), datetime.utcnow().isoformat())
                )
            except aiosqlite.IntegrityError:
                return rejected(op.opId, "duplicate", f"Already exists: {record_id}")
            return OpResult(opId=op.opId, status="applied", serverId=str(record_id))

        if op.type not in (OperationType.UPDATE, OperationType.DELETE):
            logger.warning(f"Unknown operation type: {op.type}")
            return rejected(op.opId, "unsupported", f"Unsupported op type: {op.type}")

        if op.entity.id is None:
            return rejected(op.opId, "invalid", f"{op.type} requires entity.id")

        current = await self._get_row(entity_type, op.entity.id)
        if current is None:
            return rejected(op.opId, "not_found", f"Not found: {op.entity.id}")

        # Compare-and-swap on the version column; no baseVersion means last write wins.
        version_clause = ""
        params: List[Any] = [entity_type, op.entity.id]
        if op.baseVersion is not None:
            try:
                params.append(int(op.baseVersion))
            except ValueError:
                return self._conflict(op, current)
            version_clause = " AND version = ?"

        if op.type == OperationType.DELETE:
            cursor = await conn.execute(
                f"DELETE FROM entities WHERE entity_type = ? AND id = ?{version_clause}", params
            )
        else:
            merged = {k: v for k, v in current.items() if k != self._version_field}
            merged.update(op.patch if op.patch is not None else (op.data or {}))
            merged.pop(self._version_field, None)
            cursor = await conn.execute(
                f"""UPDATE entities
                    SET data = ?, updated_at = ?, version = version + 1
                    WHERE entity_type = ? AND id = ?{version_clause}""",
                [json.dumps(merged), datetime.utcnow().isoformat()] + params
            )

        if cursor.rowcount == 0:
            latest = await self._get_row(entity_type, op.entity.id)
            if latest is None:
                return rejected(op.opId, "not_found", f"Not found: {op.entity.id}")
            return self._conflict(op, latest)
        return OpResult(opId=op.opId, status="applied")

    def _conflict(self, op: PendingOp, latest: Dict[str, Any]) -> ConflictResult:
        return ConflictResult(opId=op.opId, latestVersion=str(latest[self._version_field]),
                              server=latest, local=op)
