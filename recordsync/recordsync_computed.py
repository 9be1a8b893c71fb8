# recordsync/computed.py - Computed (derived, read-only) fields
#
# compute(record, ctx) functions are plain callables declared on the model:
#
#     "total": {"computed": True, "dependsOn": ["subtotal", "tax"],
#               "compute": lambda r, ctx: ctx.get("subtotal") * (1 + r["tax"])}
#
# dependsOn is authoritative; nothing is inferred from the function body.
# depends_on is accepted as an alias.

import copy
import logging
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Set

from recordsync_errors import ComputedFieldError, ConfigurationError

logger = logging.getLogger(__name__)

# id(model) -> (model, meta). The model is held so its id is never reused, which
# keeps every analysed model alive for the life of the process; see clear_model_meta().
_MODEL_META: Dict[int, tuple] = {}


class ModelMeta:
    """Dependency analysis of one model's computed fields"""

    def __init__(self, computed_keys: List[str], compute_fns: Dict[str, Callable],
                 depends_on: Dict[str, List[str]], dependents: Dict[str, Set[str]],
                 order: List[str]):
        self.computed_keys = computed_keys
        self.compute_fns = compute_fns
        self.depends_on = depends_on
        self.dependents = dependents
        self.order = order

    @property
    def has_computed(self) -> bool:
        return bool(self.computed_keys)


def _model_fields(model: Any) -> Dict[str, Any]:
    if model is None:
        raise ConfigurationError("A data model is required")
    fields = model.get("fields") if isinstance(model, dict) else getattr(model, "fields", None)
    if fields is None:
        return {}
    if not isinstance(fields, dict):
        raise ConfigurationError("model.fields must be a mapping of field definitions")
    return fields


def _unique_names(names) -> List[str]:
    out = []
    for name in names or []:
        if not isinstance(name, str) or not name.strip():
            continue
        name = name.strip()
        if name not in out:
            out.append(name)
    return out


def _topological_order(computed_keys: List[str], computed_deps: Dict[str, Set[str]]) -> List[str]:
    """Kahn's algorithm over computed->computed edges, dependencies first"""
    forward: Dict[str, Set[str]] = {key: set() for key in computed_keys}
    indegree = {key: 0 for key in computed_keys}
    for key, deps in computed_deps.items():
        for dep in deps:
            forward[dep].add(key)
            indegree[key] += 1

    queue = deque(key for key in computed_keys if indegree[key] == 0)
    order = []
    while queue:
        key = queue.popleft()
        order.append(key)
        for dependent in sorted(forward[key]):
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                queue.append(dependent)

    if len(order) != len(computed_keys):
        remaining = [key for key in computed_keys if indegree[key] > 0]
        raise ComputedFieldError(
            f"Computed fields: dependency cycle detected: {' -> '.join(remaining)}"
        )
    return order


def _build_model_meta(model: Any) -> ModelMeta:
    fields = _model_fields(model)

    compute_fns: Dict[str, Callable] = {}
    depends_on: Dict[str, List[str]] = {}
    for key, definition in fields.items():
        if not isinstance(definition, dict) or not definition.get("computed"):
            continue
        fn = definition.get("compute")
        if not callable(fn):
            raise ComputedFieldError(
                f'Computed fields: field "{key}" is marked computed but has no compute(record, ctx) function'
            )
        compute_fns[key] = fn
        deps = definition.get("dependsOn")
        if deps is None:
            deps = definition.get("depends_on")
        depends_on[key] = _unique_names(deps)

    dependents: Dict[str, Set[str]] = {}
    computed_deps: Dict[str, Set[str]] = {}
    for key, deps in depends_on.items():
        for dep in deps:
            if dep not in fields:
                raise ComputedFieldError(
                    f'Computed fields: field "{key}" depends on unknown field "{dep}"'
                )
            dependents.setdefault(dep, set()).add(key)
        computed_deps[key] = {dep for dep in deps if dep in compute_fns}

    computed_keys = list(compute_fns)
    order = _topological_order(computed_keys, computed_deps)
    return ModelMeta(computed_keys, compute_fns, depends_on, dependents, order)


def get_model_meta(model: Any) -> ModelMeta:
    """Analyse a model once; the result is cached for the model's lifetime"""
    cached = _MODEL_META.get(id(model))
    if cached is not None and cached[0] is model:
        return cached[1]
    meta = _build_model_meta(model)
    _MODEL_META[id(model)] = (model, meta)
    if meta.has_computed:
        logger.debug(f"Computed fields resolved in order: {meta.order}")
    return meta


def clear_model_meta():
    """Drop every cached model analysis"""
    _MODEL_META.clear()


class _RecordState:
    __slots__ = ("record", "values", "in_progress")

    def __init__(self, record: Dict[str, Any]):
        self.record = record
        self.values: Dict[str, Any] = {}
        self.in_progress: Set[str] = set()


class ComputeContext:
    """Accessor handed to compute functions.

    ctx.get(name) returns stored fields as-is and evaluates (and caches)
    computed ones, so compute functions can build on each other.
    """

    def __init__(self, engine: "ComputedFields", record: Dict[str, Any], extra: Optional[Dict[str, Any]] = None):
        self._engine = engine
        self.record = record
        self.extra = extra or {}

    def get(self, name: str, default: Any = None) -> Any:
        if self._engine.is_computed(name):
            return self._engine.get(self.record, name)
        return self.record.get(name, default)

    def __getitem__(self, name: str) -> Any:
        if self._engine.is_computed(name):
            return self._engine.get(self.record, name)
        return self.record[name]


class ComputedFields:
    """Per-store evaluation cache for one model's computed fields.

    Cached values live in a side table keyed by record identity, so stored
    records never carry hidden keys and serialize as plain dicts.
    """

    def __init__(self, model: Any, ctx: Optional[Dict[str, Any]] = None):
        self.model = model
        self.meta = get_model_meta(model)
        self.ctx = ctx or {}
        self._states: Dict[int, _RecordState] = {}

    def is_computed(self, field: str) -> bool:
        return str(field) in self.meta.compute_fns

    def _state(self, record: Dict[str, Any]) -> _RecordState:
        state = self._states.get(id(record))
        if state is None or state.record is not record:
            state = _RecordState(record)
            self._states[id(record)] = state
        return state

    def get(self, record: Dict[str, Any], field: str) -> Any:
        key = str(field)
        fn = self.meta.compute_fns.get(key)
        if fn is None:
            return record.get(key)

        state = self._state(record)
        if key in state.values:
            return state.values[key]
        if key in state.in_progress:
            raise ComputedFieldError(
                f'Computed fields: cycle while computing "{key}". Check dependsOn configuration.'
            )

        state.in_progress.add(key)
        try:
            value = fn(record, ComputeContext(self, record, self.ctx))
        finally:
            state.in_progress.discard(key)
        state.values[key] = value
        return value

    def invalidate(self, record: Dict[str, Any], changed_field: str):
        """Evict every computed value reachable from changed_field"""
        if not self.meta.has_computed:
            return
        state = self._states.get(id(record))
        if state is None or state.record is not record:
            return

        start = str(changed_field)
        visited = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for computed_field in self.meta.dependents.get(current, ()):
                state.values.pop(computed_field, None)
                if computed_field not in visited:
                    visited.add(computed_field)
                    queue.append(computed_field)

    def forget(self, record: Dict[str, Any]):
        state = self._states.get(id(record))
        if state is not None and state.record is record:
            del self._states[id(record)]

    def clear(self):
        self._states.clear()

    def strip(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Copy of record without computed keys (the stored/persisted shape)"""
        if not self.meta.has_computed:
            return dict(record)
        return {k: v for k, v in record.items() if k not in self.meta.compute_fns}

    def materialize(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Deep copy of record with every computed field evaluated"""
        out = copy.deepcopy(record)
        for key in self.meta.order:
            out[key] = self.get(record, key)
        return out
