# recordsync/models.py - Pydantic models for ops, queries and events

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional, Dict, Any
from enum import Enum

from recordsync_config import settings

class DataType(str, Enum):
    STRING = "string"
    LONG_TEXT = "longText"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ENUM = "enum"
    ARRAY = "array"
    JSON = "json"
    BLOB = "blob"
    SECRET = "secret"
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"
    SLUG = "slug"
    CURRENCY = "currency"
    PERCENT = "percent"
    RATING = "rating"
    UUID = "uuid"
    ID = "id"
    GEO_POINT = "geoPoint"
    ADDRESS = "address"
    RICH_TEXT = "richText"
    MARKDOWN = "markdown"

class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

class EventType(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    UPDATE = "update"
    COMMIT = "commit"
    RESET = "reset"
    VIEW_CHANGED = "viewChanged"

class StoreState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SAVING = "saving"
    SUCCESS = "success"
    ERROR = "error"

class PageMode(str, Enum):
    PAGE = "page"
    OFFSET = "offset"
    CURSOR = "cursor"

class EntityRef(BaseModel):
    type: str
    id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, value):
        return None if value is None else str(value)

class PendingOp(BaseModel):
    opId: str
    type: str  # create | update | delete, anything else is rejected by sources
    entity: EntityRef
    data: Optional[Dict[str, Any]] = None
    patch: Optional[Dict[str, Any]] = None
    baseVersion: Optional[str] = None

    @field_validator("baseVersion", mode="before")
    @classmethod
    def stringify_version(cls, value):
        return None if value is None else str(value)

class OpError(BaseModel):
    code: str
    message: str
    httpStatus: Optional[int] = None

class OpResult(BaseModel):
    opId: str
    status: str
    serverId: Optional[str] = None
    error: Optional[OpError] = None

class ConflictResult(BaseModel):
    opId: str
    status: str = "conflict"
    latestVersion: Optional[str] = None
    server: Optional[Dict[str, Any]] = None
    local: Optional[PendingOp] = None
    httpStatus: Optional[int] = None

class MutateResult(BaseModel):
    applied: List[OpResult] = []
    rejected: List[OpResult] = []
    conflicts: List[ConflictResult] = []
    entities: Dict[str, List[Dict[str, Any]]] = {}
    meta: Dict[str, Any] = {}

class SortSpec(BaseModel):
    field: str
    dir: str = "asc"

    @field_validator("dir", mode="before")
    @classmethod
    def normalize_dir(cls, value):
        return "desc" if str(value or "asc").lower() == "desc" else "asc"

class PageState(BaseModel):
    mode: PageMode = PageMode.OFFSET
    page: int = 0
    offset: int = 0
    after: Optional[str] = None
    limit: int = settings.DEFAULT_PAGE_LIMIT
    pageIndex: int = 0

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    @field_validator("after", mode="before")
    @classmethod
    def stringify_cursor(cls, value):
        return None if value is None else str(value)

class PageInfo(BaseModel):
    totalCount: int = 0
    mode: Optional[str] = None
    page: Optional[int] = None
    offset: Optional[int] = None
    limit: Optional[int] = None
    nextCursor: Optional[str] = None
    prevCursor: Optional[str] = None
    hasNext: Optional[bool] = None
    hasPrev: Optional[bool] = None

    model_config = ConfigDict(extra="allow")

class QuerySpec(BaseModel):
    resource: str = "resource"
    entityType: Optional[str] = None
    filter: Any = None  # field-equality mapping or predicate callable
    sort: List[SortSpec] = []
    page: PageState = Field(default_factory=PageState)
    select: Optional[List[str]] = None
    params: Dict[str, Any] = {}

class QueryResult(BaseModel):
    entities: Dict[str, List[Dict[str, Any]]] = {}
    result: List[EntityRef] = []
    pageInfo: PageInfo = Field(default_factory=PageInfo)
    meta: Dict[str, Any] = {}

class ViewConfig(BaseModel):
    name: str = "default"
    resource: str = "resource"
    entityType: str = settings.DEFAULT_ENTITY_TYPE
    keyField: str = settings.DEFAULT_KEY_FIELD
    versionField: str = settings.DEFAULT_VERSION_FIELD
    defaultPage: PageState = Field(default_factory=PageState)

class Criteria(BaseModel):
    filter: Any = None
    sort: List[SortSpec] = []

class ViewStatus(BaseModel):
    view: str
    state: StoreState = StoreState.IDLE
    error: Optional[str] = None
    criteria: Criteria = Field(default_factory=Criteria)
    pendingOps: int = 0
    pageInfo: PageInfo = Field(default_factory=PageInfo)

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

class StoreEvent(BaseModel):
    path: List[Any]
    value: Any = None
    data: Any = None
    store: Any = None

class PagingState(BaseModel):
    pageState: PageState
    pageInfo: PageInfo
