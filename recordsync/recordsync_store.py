# recordsync/store.py - View store: working/baseline snapshots, pending ops, paging, events

import copy
import logging
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional

from recordsync_computed import ComputedFields
from recordsync_config import settings
from recordsync_errors import ReadOnlyFieldError
from recordsync_models import (
    ConflictResult, Criteria, EntityRef, EventType, MutateResult, OperationType,
    PageInfo, PageMode, PageState, PagingState, PendingOp, QueryResult, QuerySpec,
    StoreEvent, StoreState, ViewConfig, ViewStatus,
)

logger = logging.getLogger(__name__)

Listener = Callable[[StoreEvent], None]

_MISSING = object()


class EventBus:
    """Synchronous fan-out to listeners in subscription order"""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: StoreEvent):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.exception(f"Store listener failed on {event.path}: {e}")


class RecordView(Mapping):
    """Read view of a working record.

    Stored fields come straight from the record; computed fields are
    evaluated (and cached) on access. Iteration only covers stored keys.
    """

    def __init__(self, record: Dict[str, Any], computed: ComputedFields):
        self._record = record
        self._computed = computed

    @property
    def record(self) -> Dict[str, Any]:
        """The underlying stored record (raw values, no computed keys)"""
        return self._record

    def __getitem__(self, key: str) -> Any:
        if self._computed.is_computed(key):
            return self._computed.get(self._record, key)
        return self._record[key]

    def __iter__(self):
        return iter(self._record)

    def __len__(self) -> int:
        return len(self._record)

    def to_dict(self) -> Dict[str, Any]:
        return self._computed.materialize(self._record)

    def __repr__(self) -> str:
        return f"RecordView({self._record!r})"


class ViewStore:
    """Record controller for one view (resource + entity type + paging).

    Edits are applied to the working snapshot synchronously and queued as
    pending ops; save() flushes the queue through the data source and
    re-queues whatever the source did not apply.
    """

    def __init__(self, model: Any, data_source: Any, view: ViewConfig,
                 ui_views: Any = None, ctx: Optional[Dict[str, Any]] = None,
                 records: Optional[List[Dict[str, Any]]] = None):
        self._model = model
        self._source = data_source
        self.config = view
        self._ui_views = ui_views
        self._computed = ComputedFields(model, ctx)
        self._bus = EventBus()

        self._working: List[Dict[str, Any]] = []
        self._baseline: List[Dict[str, Any]] = []
        self._pending: List[PendingOp] = []
        self._conflicts: Dict[str, ConflictResult] = {}
        self._op_seq = 0
        self._temp_seq = 0

        self._state = StoreState.IDLE
        self._error: Optional[str] = None
        self._criteria = Criteria()
        self._page_state = view.defaultPage.model_copy()
        self._page_info = PageInfo()

        if records is not None:
            self._working = [self._computed.strip(copy.deepcopy(r)) for r in records]
            self._baseline = copy.deepcopy(self._working)

    # Accessors

    @property
    def name(self) -> str:
        return self.config.name

    def get_record(self, index: int) -> Optional[RecordView]:
        if not 0 <= index < len(self._working):
            return None
        return RecordView(self._working[index], self._computed)

    def get_length(self) -> int:
        return len(self._working)

    def get_model(self) -> Any:
        return self._model

    def get_view_name(self) -> str:
        return self.config.name

    def get_view_config(self) -> ViewConfig:
        return self.config

    def get_ui_views(self) -> Any:
        return self._ui_views

    def get_pending_ops(self) -> List[PendingOp]:
        return [op.model_copy(deep=True) for op in self._pending]

    def get_conflicts(self) -> List[ConflictResult]:
        return list(self._conflicts.values())

    def get_status(self) -> ViewStatus:
        return ViewStatus(
            view=self.config.name,
            state=self._state,
            error=self._error,
            criteria=self._criteria.model_copy(),
            pendingOps=len(self._pending),
            pageInfo=self._page_info.model_copy(),
        )

    def get_paging_state(self) -> PagingState:
        return PagingState(pageState=self._page_state.model_copy(), pageInfo=self._page_info.model_copy())

    def to_json(self) -> List[Dict[str, Any]]:
        return [self._computed.materialize(r) for r in self._working]

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self._bus.subscribe(listener)

    def _emit(self, path: List[Any], value: Any):
        self._bus.emit(StoreEvent(path=path, value=value, data=self._working, store=self))

    # Identity helpers

    def _key(self, record: Dict[str, Any]) -> Optional[str]:
        value = record.get(self.config.keyField)
        if value is None or value == "":
            return None
        return str(value)

    def _next_op_id(self) -> str:
        self._op_seq += 1
        return f"op-{self._op_seq}"

    def _next_temp_id(self) -> str:
        taken = {self._key(r) for r in self._working}
        while True:
            self._temp_seq += 1
            candidate = f"{settings.TEMP_ID_PREFIX}{self._temp_seq}"
            if candidate not in taken:
                return candidate

    def _baseline_version(self, record_id: str) -> Optional[str]:
        for record in self._baseline:
            if self._key(record) == record_id:
                version = record.get(self.config.versionField)
                return None if version is None else str(version)
        return None

    def _find_op(self, op_type: str, record_id: Optional[str]) -> Optional[PendingOp]:
        for op in self._pending:
            if op.type == op_type and op.entity.id == record_id:
                return op
        return None

    def _drop_ops(self, record_id: str, op_types) -> int:
        before = len(self._pending)
        self._pending = [
            op for op in self._pending
            if not (op.entity.id == record_id and op.type in op_types)
        ]
        return before - len(self._pending)

    def _record_at(self, index: int) -> Dict[str, Any]:
        if not 0 <= index < len(self._working):
            raise IndexError(f"Record index {index} out of range for view {self.config.name}")
        return self._working[index]

    # Mutators

    def _queue_update(self, record_id: Optional[str], patch: Dict[str, Any]):
        """Queue or coalesce an update; one update op per entity at most"""
        if record_id is None:
            logger.debug(f"View {self.config.name}: record without {self.config.keyField}, edit kept local")
            return
        patch = copy.deepcopy(patch)

        create = self._find_op(OperationType.CREATE, record_id)
        if create is not None:
            create.data.update(patch)
            create.data.pop(self.config.keyField, None)
            return

        existing = self._find_op(OperationType.UPDATE, record_id)
        if existing is not None:
            existing.patch.update(patch)
            return

        op = PendingOp(
            opId=self._next_op_id(),
            type=OperationType.UPDATE.value,
            entity=EntityRef(type=self.config.entityType, id=record_id),
            patch=patch,
            baseVersion=self._baseline_version(record_id),
        )
        self._pending.append(op)
        logger.debug(f"View {self.config.name}: queued {op.opId} update for {record_id}")

    def set_field(self, index: int, field: str, value: Any):
        if self._computed.is_computed(field):
            raise ReadOnlyFieldError(field)
        record = self._record_at(index)
        record_id = self._key(record)

        record[field] = value
        self._computed.invalidate(record, field)
        self._emit([index, field], value)
        self._queue_update(record_id, {field: value})

    def add_record(self, record: Dict[str, Any], at_index: Optional[int] = None) -> int:
        stored = self._computed.strip(copy.deepcopy(record))
        key_field = self.config.keyField
        if self._key(stored) is None:
            stored[key_field] = self._next_temp_id()
            data = {k: v for k, v in stored.items() if k != key_field}
        else:
            data = copy.deepcopy(stored)

        index = len(self._working) if at_index is None else max(0, min(at_index, len(self._working)))
        self._working.insert(index, stored)
        self._emit([EventType.ADD, index], stored)

        op = PendingOp(
            opId=self._next_op_id(),
            type=OperationType.CREATE.value,
            entity=EntityRef(type=self.config.entityType, id=self._key(stored)),
            data=data,
        )
        self._pending.append(op)
        logger.debug(f"View {self.config.name}: queued {op.opId} create for {op.entity.id}")
        return index

    def remove_records(self, indexes: List[int]) -> int:
        # Descending order keeps the remaining target indexes valid while popping.
        targets = sorted({i for i in indexes if 0 <= i < len(self._working)}, reverse=True)
        removed = []
        for index in targets:
            record = self._working.pop(index)
            self._computed.forget(record)
            removed.append((index, record))
        if not removed:
            return 0

        self._emit([EventType.REMOVE, [i for i, _ in removed]], [r for _, r in removed])

        for _, record in removed:
            record_id = self._key(record)
            if record_id is None:
                continue
            if self._drop_ops(record_id, (OperationType.CREATE,)):
                # Never reached the source: forget it entirely.
                self._drop_ops(record_id, (OperationType.UPDATE,))
                continue
            self._drop_ops(record_id, (OperationType.UPDATE,))
            if self._find_op(OperationType.DELETE, record_id) is None:
                self._pending.append(PendingOp(
                    opId=self._next_op_id(),
                    type=OperationType.DELETE.value,
                    entity=EntityRef(type=self.config.entityType, id=record_id),
                    baseVersion=self._baseline_version(record_id),
                ))
        return len(removed)

    def update(self, index: int, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Replace a working record wholesale; changed fields are queued as one update"""
        if not 0 <= index < len(self._working):
            return None
        previous = self._working[index]
        stored = self._computed.strip(copy.deepcopy(record))
        patch = {k: v for k, v in stored.items() if previous.get(k, _MISSING) != v}

        self._computed.forget(previous)
        self._working[index] = stored
        self._emit([EventType.UPDATE, index], stored)
        if patch:
            self._queue_update(self._key(previous), patch)
        return stored

    def update_index(self, index: int) -> Optional[Dict[str, Any]]:
        """Re-announce a record that was changed outside the store"""
        if not 0 <= index < len(self._working):
            return None
        record = self._working[index]
        self._computed.forget(record)
        self._emit([EventType.UPDATE, index], record)
        return record

    # Local snapshot management

    def diff(self) -> List[Dict[str, Any]]:
        """Field-level difference between baseline and working, by index"""
        changes = []
        for index in range(max(len(self._working), len(self._baseline))):
            current = self._working[index] if index < len(self._working) else None
            original = self._baseline[index] if index < len(self._baseline) else None
            if current is not None and original is None:
                changes.append({"index": index, "added": True, "to": current})
            elif current is None and original is not None:
                changes.append({"index": index, "deleted": True, "from": original})
            else:
                for key, value in current.items():
                    if original.get(key, _MISSING) != value:
                        changes.append({"index": index, "field": key, "from": original.get(key), "to": value})
        return changes

    def commit(self):
        """Adopt the working snapshot as baseline (no source call)"""
        self._baseline = copy.deepcopy(self._working)
        self._emit([EventType.COMMIT], copy.deepcopy(self._baseline))

    def reset(self):
        """Discard every unsaved change, queued ops included"""
        self._working = copy.deepcopy(self._baseline)
        self._computed.clear()
        self._pending = []
        self._conflicts.clear()
        self._emit([EventType.RESET], self._working)

    # Reads

    def _coerce_criteria(self, criteria: Any) -> Criteria:
        if isinstance(criteria, Criteria):
            return criteria.model_copy()
        return Criteria.model_validate(criteria or {})

    async def _run_query(self, page: PageState) -> QueryResult:
        spec = QuerySpec(
            resource=self.config.resource,
            entityType=self.config.entityType,
            filter=self._criteria.filter,
            sort=self._criteria.sort,
            page=page,
        )
        self._state = StoreState.LOADING
        try:
            raw = await self._source.query(spec)
        except Exception as e:
            self._state = StoreState.ERROR
            self._error = str(e)
            logger.error(f"Query for view {self.config.name} failed: {e}")
            raise

        result = raw if isinstance(raw, QueryResult) else QueryResult.model_validate(raw)
        self._replace_snapshot(result)
        self._page_state = page
        self._page_info = result.pageInfo
        self._state = StoreState.SUCCESS
        self._error = None
        logger.info(f"View {self.config.name} loaded {len(self._working)} of {self._page_info.totalCount} records")
        self._emit([EventType.RESET], self._working)
        return result

    def _replace_snapshot(self, result: QueryResult):
        index: Dict[tuple, Dict[str, Any]] = {}
        for entity_type, entities in result.entities.items():
            for entity in entities:
                if self._key(entity) is not None:
                    index[(entity_type, self._key(entity))] = entity

        records = []
        for ref in result.result:
            entity = index.get((ref.type, ref.id))
            if entity is None:
                logger.warning(f"View {self.config.name}: result references missing entity {ref.type}:{ref.id}")
                continue
            records.append(self._computed.strip(copy.deepcopy(entity)))

        # Pending ops survive: they target entity ids, not page positions.
        self._computed.clear()
        self._working = records
        self._baseline = copy.deepcopy(records)

    async def load_first(self, criteria: Any = None) -> QueryResult:
        if criteria is not None:
            self._criteria = self._coerce_criteria(criteria)
        return await self._run_query(self.config.defaultPage.model_copy(update={"pageIndex": 0}))

    async def search(self, criteria: Any) -> QueryResult:
        self._criteria = self._coerce_criteria(criteria)
        return await self._run_query(self.config.defaultPage.model_copy(update={"pageIndex": 0}))

    async def page_next(self) -> bool:
        state, info = self._page_state, self._page_info
        if state.mode == PageMode.CURSOR:
            if info.nextCursor is None:
                return False
            page = state.model_copy(update={"after": info.nextCursor, "pageIndex": state.pageIndex + 1})
        elif state.mode == PageMode.PAGE:
            has_next = info.hasNext if info.hasNext is not None else (state.page + 1) * state.limit < info.totalCount
            if not has_next:
                return False
            page = state.model_copy(update={"page": state.page + 1, "pageIndex": state.pageIndex + 1})
        else:
            has_next = info.hasNext if info.hasNext is not None else state.offset + state.limit < info.totalCount
            if not has_next:
                return False
            page = state.model_copy(update={"offset": state.offset + state.limit, "pageIndex": state.pageIndex + 1})
        await self._run_query(page)
        return True

    async def page_prev(self) -> bool:
        state, info = self._page_state, self._page_info
        previous_index = max(0, state.pageIndex - 1)
        if state.mode == PageMode.CURSOR:
            if info.prevCursor is None:
                return False
            page = state.model_copy(update={"after": info.prevCursor, "pageIndex": previous_index})
        elif state.mode == PageMode.PAGE:
            if state.page <= 0:
                return False
            page = state.model_copy(update={"page": state.page - 1, "pageIndex": previous_index})
        else:
            if state.offset <= 0:
                return False
            page = state.model_copy(update={"offset": max(0, state.offset - state.limit), "pageIndex": previous_index})
        await self._run_query(page)
        return True

    # Writes

    async def save(self) -> MutateResult:
        if not self._pending:
            return MutateResult()

        # Drain atomically: edits made while mutate() is awaited form the next batch.
        batch = self._pending
        self._pending = []
        self._state = StoreState.SAVING
        logger.debug(f"View {self.config.name}: saving {len(batch)} ops")

        try:
            raw = await self._source.mutate(batch, self.config)
        except Exception as e:
            self._requeue(batch)
            self._state = StoreState.ERROR
            self._error = str(e)
            logger.warning(f"Save failed for view {self.config.name}, re-queued {len(batch)} ops: {e}")
            raise

        result = raw if isinstance(raw, MutateResult) else MutateResult.model_validate(raw)
        applied_ids = {applied.opId for applied in result.applied}
        leftover = [op for op in batch if op.opId not in applied_ids]

        self._reconcile(batch, result, full=not leftover)

        if not leftover:
            self._baseline = self._confirmed_snapshot(result)
            self._state = StoreState.SUCCESS
            self._error = None
            logger.info(f"View {self.config.name} saved {len(result.applied)} ops")
            self._emit([EventType.COMMIT], copy.deepcopy(self._baseline))
            return result

        # Applied ops must never be sent again; everything else waits for the next save().
        self._requeue(leftover)
        for conflict in result.conflicts:
            self._conflicts[conflict.opId] = conflict
        self._state = StoreState.ERROR
        self._error = f"{len(result.conflicts)} conflicts, {len(result.rejected)} rejected"
        logger.warning(
            f"View {self.config.name}: {len(result.applied)} applied, "
            f"{len(result.conflicts)} conflicts, {len(result.rejected)} rejected; re-queued {len(leftover)} ops"
        )
        return result

    def _requeue(self, ops: List[PendingOp]):
        """Put ops back at the front, folding in edits queued since the drain"""
        front = []
        for op in ops:
            removed = self._find_op(OperationType.DELETE, op.entity.id) is not None
            if removed and op.type == OperationType.CREATE:
                # Removed while its create was in flight: neither op reaches the source.
                self._pending = [p for p in self._pending if p.entity.id != op.entity.id]
                logger.debug(f"View {self.config.name}: dropped {op.opId} create for removed {op.entity.id}")
                continue
            if removed and op.type == OperationType.UPDATE:
                continue
            if op.type in (OperationType.UPDATE, OperationType.CREATE):
                newer = self._find_op(OperationType.UPDATE, op.entity.id)
                if newer is not None:
                    target = op.patch if op.type == OperationType.UPDATE else op.data
                    target.update(newer.patch or {})
                    self._pending = [p for p in self._pending if p is not newer]
            front.append(op)
        self._pending = front + self._pending

    def _confirmed_snapshot(self, result: MutateResult) -> List[Dict[str, Any]]:
        """Working snapshot minus the edits still waiting in the queue"""
        known = {self._key(r): r for r in self._baseline if self._key(r) is not None}
        for entity in result.entities.get(self.config.entityType, []):
            if self._key(entity) is not None:
                known[self._key(entity)] = self._computed.strip(entity)

        unsent = set()
        queued_fields: Dict[str, set] = {}
        queued_deletes = []
        for op in self._pending:
            if op.type == OperationType.CREATE:
                unsent.add(op.entity.id)
            elif op.type == OperationType.UPDATE:
                queued_fields.setdefault(op.entity.id, set()).update(op.patch or {})
            elif op.type == OperationType.DELETE:
                queued_deletes.append(op.entity.id)

        snapshot = []
        for record in self._working:
            record_id = self._key(record)
            if record_id in unsent:
                continue
            confirmed = copy.deepcopy(record)
            source = known.get(record_id, {})
            for field in queued_fields.get(record_id, ()):
                if field in source:
                    confirmed[field] = copy.deepcopy(source[field])
                else:
                    confirmed.pop(field, None)
            snapshot.append(confirmed)

        # Records removed after the drain stay on the source until their delete is saved.
        positions = {self._key(r): i for i, r in enumerate(self._baseline)}
        for record_id in sorted(queued_deletes, key=lambda rid: positions.get(rid, len(positions))):
            if record_id in known:
                index = min(positions.get(record_id, len(snapshot)), len(snapshot))
                snapshot.insert(index, copy.deepcopy(known[record_id]))
        return snapshot

    def _rename_entity(self, old_id: str, new_id: str):
        key_field = self.config.keyField
        for record in self._working:
            if self._key(record) == old_id:
                record[key_field] = new_id
        for op in self._pending:
            if op.entity.id == old_id:
                op.entity.id = new_id

    def _reconcile(self, batch: List[PendingOp], result: MutateResult, full: bool):
        """Fold the source's canonical data back into the snapshots"""
        ops_by_id = {op.opId: op for op in batch}
        deleted = set()
        created = set()
        for applied in result.applied:
            op = ops_by_id.get(applied.opId)
            if op is None:
                continue
            self._conflicts.pop(applied.opId, None)
            if op.type == OperationType.CREATE:
                if applied.serverId is not None and applied.serverId != op.entity.id:
                    self._rename_entity(op.entity.id, applied.serverId)
                created.add(applied.serverId or op.entity.id)
            elif op.type == OperationType.DELETE:
                deleted.add(op.entity.id)

        # Fields with edits queued after the drain keep their local values.
        protected: Dict[str, set] = {}
        for op in self._pending:
            fields = op.patch if op.type == OperationType.UPDATE else op.data
            protected.setdefault(op.entity.id, set()).update(fields or {})

        for entity in result.entities.get(self.config.entityType, []):
            record_id = self._key(entity)
            if record_id is None:
                continue
            canonical = self._computed.strip(entity)
            version = entity.get(self.config.versionField)
            if version is not None:
                # Queued follow-up edits now build on the version just written.
                for op in self._pending:
                    if op.entity.id == record_id and op.type != OperationType.CREATE:
                        op.baseVersion = str(version)
            for record in self._working:
                if self._key(record) == record_id:
                    skip = protected.get(record_id, set())
                    record.update({k: copy.deepcopy(v) for k, v in canonical.items() if k not in skip})
                    record[self.config.keyField] = entity[self.config.keyField]
                    self._computed.forget(record)
            if not full:
                self._adopt_baseline(record_id, canonical, is_new=record_id in created)

        if not full:
            self._baseline = [r for r in self._baseline if self._key(r) not in deleted]

    def _adopt_baseline(self, record_id: str, canonical: Dict[str, Any], is_new: bool = False):
        for position, record in enumerate(self._baseline):
            if self._key(record) == record_id:
                self._baseline[position] = copy.deepcopy(canonical)
                return
        if is_new:
            working_ids = [self._key(r) for r in self._working]
            position = working_ids.index(record_id) if record_id in working_ids else len(self._baseline)
            self._baseline.insert(min(position, len(self._baseline)), copy.deepcopy(canonical))

    def resolve_conflict(self, op_id: str, keep: str = "server"):
        """Settle a conflict reported by the last save().

        keep="server" drops the queued op and adopts the server record;
        keep="local" rebases the queued op onto the server's latest version
        so the next save() overwrites it.
        """
        if keep not in ("server", "local"):
            raise ValueError(f'keep must be "server" or "local", got {keep!r}')
        conflict = self._conflicts.pop(op_id)
        op = next((p for p in self._pending if p.opId == op_id), None)
        pending = op or conflict.local
        record_id = pending.entity.id if pending is not None else None
        server = self._computed.strip(conflict.server) if conflict.server else None

        if keep == "local":
            if op is not None:
                op.baseVersion = conflict.latestVersion
            if server is not None and record_id is not None:
                self._adopt_baseline(record_id, server)
            return

        if op is not None:
            self._pending = [p for p in self._pending if p is not op]
        if server is None or record_id is None:
            return
        self._adopt_baseline(record_id, server, is_new=True)
        for index, record in enumerate(self._working):
            if self._key(record) == record_id:
                record.clear()
                record.update(copy.deepcopy(server))
                self._computed.forget(record)
                self._emit([EventType.UPDATE, index], record)
                return
        self._working.append(copy.deepcopy(server))
        self._emit([EventType.ADD, len(self._working) - 1], self._working[-1])
