# recordsync/datasource.py - DataSource contract and in-memory adapter

import copy
import json
import time
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Tuple
import logging

from recordsync_config import settings
from recordsync_models import (
    ConflictResult, EntityRef, MutateResult, OpError, OpResult, OperationType,
    PageInfo, PageMode, PageState, PendingOp, QueryResult, QuerySpec, SortSpec,
)

logger = logging.getLogger(__name__)

def _stable_dumps(value: Any) -> str:
    if callable(value):
        return json.dumps(f"<predicate:{getattr(value, '__qualname__', repr(value))}>")
    if isinstance(value, dict):
        items = sorted((str(k), v) for k, v in value.items())
        return "{" + ",".join(f"{json.dumps(k)}:{_stable_dumps(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_stable_dumps(v) for v in value) + "]"
    return json.dumps(value, default=str)

def make_query_key(spec: QuerySpec) -> str:
    """Deterministic, human-readable cache key for a query"""
    payload = spec.model_dump(exclude={"filter"})
    payload["filter"] = spec.filter
    return f"{spec.resource}:{_stable_dumps(payload)}"

def apply_filter(records: List[Dict[str, Any]], filter_spec: Any) -> List[Dict[str, Any]]:
    """Equality mapping or predicate; anything else leaves records untouched"""
    if not filter_spec:
        return records
    if callable(filter_spec):
        return [r for r in records if filter_spec(r)]
    if not isinstance(filter_spec, dict):
        return records
    return [r for r in records if all(r.get(k) == v for k, v in filter_spec.items())]

def apply_sort(records: List[Dict[str, Any]], sort: List[SortSpec]) -> List[Dict[str, Any]]:
    """Stable multi-key sort; missing values go last ascending, first descending"""
    specs = [s for s in (sort or []) if s.field]
    if not specs:
        return records
    out = list(records)
    # Sort by the least significant key first; list.sort is stable.
    for spec in reversed(specs):
        present = [r for r in out if r.get(spec.field) is not None]
        missing = [r for r in out if r.get(spec.field) is None]
        present.sort(key=lambda r: r[spec.field], reverse=spec.dir == "desc")
        out = present + missing if spec.dir == "asc" else missing + present
    return out

def slice_page(records: List[Dict[str, Any]], page: PageState) -> Tuple[List[Dict[str, Any]], PageInfo]:
    """Cut one page out of records; cursor tokens are stringified start offsets"""
    limit = max(0, page.limit)

    if page.mode == PageMode.PAGE:
        offset = max(0, page.page) * limit
        items = records[offset:offset + limit]
        return items, PageInfo(mode="page", page=page.page, limit=limit,
                               hasNext=offset + len(items) < len(records),
                               hasPrev=page.page > 0)

    if page.mode == PageMode.CURSOR:
        try:
            offset = max(0, int(page.after)) if page.after is not None else 0
        except ValueError:
            offset = 0
        items = records[offset:offset + limit]
        next_offset = offset + len(items)
        return items, PageInfo(
            mode="cursor",
            limit=limit,
            nextCursor=str(next_offset) if next_offset < len(records) else None,
            prevCursor=str(max(0, offset - limit)) if offset > 0 else None,
            hasNext=next_offset < len(records),
            hasPrev=offset > 0,
        )

    offset = max(0, page.offset)
    items = records[offset:offset + limit]
    return items, PageInfo(mode="offset", offset=offset, limit=limit,
                           hasNext=offset + len(items) < len(records),
                           hasPrev=offset > 0)

def coerce_entity(item: Any, index: int, key_field: str, version_field: str,
                  fallback_version: str = "1") -> Dict[str, Any]:
    """Entities are always objects carrying a version"""
    if isinstance(item, dict):
        record = copy.deepcopy(item)
    else:
        record = {key_field: str(index), "value": item}
    if record.get(version_field) is None:
        record[version_field] = fallback_version
    return record

def entity_id(record: Dict[str, Any], key_field: str, fallback_index: int) -> str:
    value = record.get(key_field)
    if value is None or value == "":
        return str(fallback_index)
    return str(value)

def rejected(op_id: str, code: str, message: str, http_status: Optional[int] = None) -> OpResult:
    return OpResult(opId=op_id, status="rejected",
                    error=OpError(code=code, message=message, httpStatus=http_status))


class DataSource(ABC):
    """Contract between a view store and whatever holds the canonical data.

    query() and mutate() are coroutines. mutate() must process ops one at a
    time, in order, and report business outcomes (applied, rejected,
    conflicts) as data; a transport failure raises for the whole call.
    """

    def __init__(self):
        self._model = None
        self._defaults: Dict[str, Any] = {}
        self._initialized = False
        self._entity_type = settings.DEFAULT_ENTITY_TYPE
        self._key_field = settings.DEFAULT_KEY_FIELD
        self._version_field = settings.DEFAULT_VERSION_FIELD

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self, model: Any = None, defaults: Optional[Dict[str, Any]] = None):
        """One-time setup of default entity type / key field / version field"""
        self._model = model
        self._defaults = dict(defaults or {})
        self._entity_type = self._defaults.get("entityType") or self._entity_type
        self._key_field = self._defaults.get("keyField") or self._key_field
        self._version_field = self._defaults.get("versionField") or self._version_field
        self._initialized = True

    def capabilities(self) -> Dict[str, Any]:
        return {
            "pagination": ["cursor", "page", "offset"],
            "conflicts": True,
            "subscriptions": False,
            "offline": False,
        }

    @abstractmethod
    async def query(self, spec: QuerySpec) -> QueryResult:
        ...

    @abstractmethod
    async def mutate(self, ops: List[PendingOp], view_meta: Any = None) -> MutateResult:
        ...

    async def close(self):
        pass


class ArrayDataSource(DataSource):
    """In-memory adapter over a plain list of records.

    The list is the canonical source; versions are integer counters kept as
    strings on each record.
    """

    def __init__(self, records: Optional[List[Any]] = None, entity_type: str = settings.DEFAULT_ENTITY_TYPE,
                 key_field: str = settings.DEFAULT_KEY_FIELD, version_field: str = settings.DEFAULT_VERSION_FIELD):
        super().__init__()
        self._entity_type = entity_type
        self._key_field = key_field
        self._version_field = version_field
        self._data: List[Dict[str, Any]] = [
            coerce_entity(item, index, key_field, version_field)
            for index, item in enumerate(records or [])
        ]
        for record in self._data:
            record[version_field] = str(record[version_field])

    @property
    def records(self) -> List[Dict[str, Any]]:
        """Deep copy of the canonical list"""
        return copy.deepcopy(self._data)

    def _find(self, record_id: str) -> Optional[Dict[str, Any]]:
        for index, record in enumerate(self._data):
            if entity_id(record, self._key_field, index) == record_id:
                return record
        return None

    def _next_id(self) -> str:
        taken = {entity_id(r, self._key_field, i) for i, r in enumerate(self._data)}
        candidate = len(self._data) + 1
        while str(candidate) in taken:
            candidate += 1
        return str(candidate)

    def _bump_version(self, record: Dict[str, Any]):
        current = record.get(self._version_field)
        try:
            record[self._version_field] = str(int(current) + 1)
        except (TypeError, ValueError):
            record[self._version_field] = "1"

    async def query(self, spec: QuerySpec) -> QueryResult:
        entity_type = spec.entityType or self._entity_type

        rows = [(i, r) for i, r in enumerate(self._data)]
        ids = {id(r): entity_id(r, self._key_field, i) for i, r in rows}
        matched = apply_sort(apply_filter([r for _, r in rows], spec.filter), spec.sort)
        items, page_info = slice_page(matched, spec.page)
        page_info.totalCount = len(matched)

        entities = []
        result = []
        for record in items:
            record_id = ids[id(record)]
            out = copy.deepcopy(record)
            if out.get(self._key_field) is None:
                out[self._key_field] = record_id
            if spec.select:
                out = {k: v for k, v in out.items()
                       if k in spec.select or k in (self._key_field, self._version_field)}
            entities.append(out)
            result.append(EntityRef(type=entity_type, id=record_id))

        return QueryResult(
            entities={entity_type: entities},
            result=result,
            pageInfo=page_info,
            meta={"resource": spec.resource, "queryKey": make_query_key(spec), "fetchedAt": time.time()},
        )

    def _check_version(self, op: PendingOp, found: Dict[str, Any]) -> Optional[ConflictResult]:
        current = found.get(self._version_field)
        current = None if current is None else str(current)
        if op.baseVersion is not None and current is not None and op.baseVersion != current:
            return ConflictResult(opId=op.opId, latestVersion=current,
                                  server=copy.deepcopy(found), local=op)
        return None

    async def mutate(self, ops: List[PendingOp], view_meta: Any = None) -> MutateResult:
        result = MutateResult(meta={"mutatedAt": time.time()})

        for op in ops:
            entity_type = op.entity.type or self._entity_type

            if op.type == OperationType.CREATE:
                data = copy.deepcopy(op.data or {})
                if data.get(self._key_field) is None:
                    data[self._key_field] = self._next_id()
                data[self._version_field] = "1"
                self._data.append(data)
                result.entities.setdefault(entity_type, []).append(copy.deepcopy(data))
                result.applied.append(OpResult(opId=op.opId, status="applied",
                                               serverId=str(data[self._key_field])))
                continue

            if op.type not in (OperationType.UPDATE, OperationType.DELETE):
                logger.warning(f"Unknown operation type: {op.type}")
                result.rejected.append(rejected(op.opId, "unsupported", f"Unsupported op type: {op.type}"))
                continue

            if op.entity.id is None:
                result.rejected.append(rejected(op.opId, "invalid", f"{op.type} requires entity.id"))
                continue

            # Look the record up at apply time: earlier deletes in this batch shift positions.
            found = self._find(op.entity.id)
            if found is None:
                result.rejected.append(rejected(op.opId, "not_found", f"Not found: {op.entity.id}"))
                continue

            conflict = self._check_version(op, found)
            if conflict is not None:
                result.conflicts.append(conflict)
                continue

            if op.type == OperationType.DELETE:
                position = next(i for i, r in enumerate(self._data) if r is found)
                del self._data[position]
                result.applied.append(OpResult(opId=op.opId, status="applied"))
                continue

            found.update(copy.deepcopy(op.patch if op.patch is not None else (op.data or {})))
            self._bump_version(found)
            result.entities.setdefault(entity_type, []).append(copy.deepcopy(found))
            result.applied.append(OpResult(opId=op.opId, status="applied"))

        logger.debug(
            f"Array mutate: {len(result.applied)} applied, {len(result.rejected)} rejected, "
            f"{len(result.conflicts)} conflicts"
        )
        return result
