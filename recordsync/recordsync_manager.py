# recordsync/manager.py - Store manager: named views over one data source

import logging
from typing import Any, Callable, Dict, List, Optional

from recordsync_computed import get_model_meta
from recordsync_datasource import ArrayDataSource
from recordsync_errors import ConfigurationError
from recordsync_models import EventType, StoreEvent, ViewConfig
from recordsync_store import EventBus, ViewStore

logger = logging.getLogger(__name__)

DEFAULT_VIEW_NAME = "default"


def _check_data_source(data_source: Any):
    if data_source is None:
        raise ConfigurationError("A data source is required")
    for method in ("init", "query", "mutate"):
        if not callable(getattr(data_source, method, None)):
            raise ConfigurationError(f"Data source must implement {method}()")


class StoreManager:
    """Owns the view stores that share one model and one data source.

    Attributes not defined here are looked up on the active view, so a
    manager can be handed to code that expects a single ViewStore.
    """

    def __init__(self, model: Any, data_source: Any, views: Optional[Dict[str, Any]] = None,
                 view: Any = None, default_view: Optional[str] = None,
                 ui_views: Any = None, ctx: Optional[Dict[str, Any]] = None):
        if model is None:
            raise ConfigurationError("A data model is required")
        _check_data_source(data_source)
        # Fail fast on bad computed field definitions
        get_model_meta(model)

        self.model = model
        self.data_source = data_source
        self.ui_views = ui_views
        self.ctx = ctx or {}
        self._configs = self._build_configs(views, view)
        self._stores: Dict[str, ViewStore] = {}
        self._bus = EventBus()
        self._unsubscribe_active: Optional[Callable[[], None]] = None

        active = default_view or next(iter(self._configs))
        if active not in self._configs:
            raise ConfigurationError(f"Unknown view: {active}")
        self._active = active

        if not getattr(data_source, "initialized", False):
            first = self._configs[active]
            data_source.init(model, {
                "entityType": first.entityType,
                "keyField": first.keyField,
                "versionField": first.versionField,
                "resource": first.resource,
            })
            logger.debug(f"Data source {type(data_source).__name__} initialized")

        self._attach_active()

    def _build_configs(self, views: Optional[Dict[str, Any]], view: Any) -> Dict[str, ViewConfig]:
        configs: Dict[str, ViewConfig] = {}
        if views:
            for name, cfg in views.items():
                data = cfg.model_dump() if isinstance(cfg, ViewConfig) else dict(cfg or {})
                data["name"] = name
                configs[name] = ViewConfig.model_validate(data)
        elif view is not None:
            config = view if isinstance(view, ViewConfig) else ViewConfig.model_validate(view)
            configs[config.name] = config
        else:
            configs[DEFAULT_VIEW_NAME] = ViewConfig(name=DEFAULT_VIEW_NAME)
        return configs

    # Views

    def view_names(self) -> List[str]:
        return list(self._configs)

    def collection(self, name: Optional[str] = None) -> ViewStore:
        """Get (building on first use) the store for a named view"""
        name = name or self._active
        store = self._stores.get(name)
        if store is not None:
            return store
        config = self._configs.get(name)
        if config is None:
            raise ConfigurationError(f"Unknown view: {name}")
        store = ViewStore(self.model, self.data_source, config, ui_views=self.ui_views, ctx=self.ctx)
        self._stores[name] = store
        return store

    def view(self, name: Optional[str] = None) -> ViewStore:
        return self.collection(name)

    def get_active_view(self) -> str:
        return self._active

    def set_active_view(self, name: str) -> ViewStore:
        """Switch the proxied view; data is not reloaded"""
        if name not in self._configs:
            raise ConfigurationError(f"Unknown view: {name}")
        previous = self._active
        self._active = name
        store = self.collection(name)
        self._attach_active()
        logger.info(f"Active view changed: {previous} -> {name}")
        self._bus.emit(StoreEvent(
            path=[EventType.VIEW_CHANGED],
            value={"from": previous, "to": name},
            data=store._working,
            store=store,
        ))
        return store

    # Events

    def _attach_active(self):
        if self._unsubscribe_active is not None:
            self._unsubscribe_active()
        self._unsubscribe_active = self.collection(self._active).subscribe(self._bus.emit)

    def subscribe(self, listener: Callable[[StoreEvent], None]) -> Callable[[], None]:
        return self._bus.subscribe(listener)

    async def close(self):
        close = getattr(self.data_source, "close", None)
        if callable(close):
            await close()

    def __getattr__(self, name: str):
        # Only reached for attributes the manager itself does not define
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self.collection(self._active), name)


def create_store(**kwargs) -> StoreManager:
    return StoreManager(**kwargs)


def create_local_store(records: List[Dict[str, Any]], model: Any, **view) -> ViewStore:
    """Store seeded synchronously from a list, backed by an in-memory source"""
    config = ViewConfig.model_validate(view)
    data_source = ArrayDataSource(records, entity_type=config.entityType,
                                  key_field=config.keyField, version_field=config.versionField)
    get_model_meta(model)
    data_source.init(model, {
        "entityType": config.entityType,
        "keyField": config.keyField,
        "versionField": config.versionField,
        "resource": config.resource,
    })
    return ViewStore(model, data_source, config, records=data_source.records)
