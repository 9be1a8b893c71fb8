# recordsync/rest.py - REST/HTTP data source (ETag / If-Match concurrency)

import copy
import time
from urllib.parse import quote
from typing import List, Dict, Any, Optional
import logging

import httpx
from pydantic import BaseModel

from recordsync_config import settings
from recordsync_datasource import DataSource, make_query_key, rejected
from recordsync_errors import TransportError
from recordsync_models import (
    ConflictResult, EntityRef, MutateResult, OpResult, OperationType,
    PageInfo, PageMode, PendingOp, QueryResult, QuerySpec,
)

logger = logging.getLogger(__name__)

CONFLICT_STATUSES = (409, 412)

# Non-success statuses reported as business rejections rather than transport errors
REJECTION_CODES = {
    400: "validation",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    422: "validation",
}

class ResourceConfig(BaseModel):
    path: Optional[str] = None
    itemPath: Optional[str] = None  # e.g. "products/{id}"
    entityType: Optional[str] = None
    keyField: Optional[str] = None
    versionField: Optional[str] = None

class ConcurrencyConfig(BaseModel):
    mode: str = "etag"
    ifMatchHeader: str = "If-Match"
    etagHeader: str = "ETag"

class _Resolved(BaseModel):
    resource: str
    entityType: str
    keyField: str
    versionField: str
    basePath: str
    itemPath: str

def _parse_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None

def _coerce_list_payload(body: Any):
    """Array, {items}, {results} or {data}"""
    if isinstance(body, list):
        return body, {}
    if isinstance(body, dict):
        for key in ("items", "results", "data"):
            if isinstance(body.get(key), list):
                return body[key], body
        return [], body
    return [], {}

def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class RestDataSource(DataSource):
    """DataSource speaking plain REST conventions.

    - list:   GET    {base_url}/{resource}?filter...&sort=a,-b&page=&limit=
    - item:   GET    {base_url}/{resource}/{id}
    - create: POST   {base_url}/{resource}
    - update: PATCH  {base_url}/{resource}/{id}   (If-Match: baseVersion)
    - delete: DELETE {base_url}/{resource}/{id}   (If-Match: baseVersion)

    409/412 responses become conflicts, populated by one follow-up GET.
    """

    def __init__(self, base_url: str = "", client: Optional[httpx.AsyncClient] = None,
                 headers: Optional[Dict[str, str]] = None,
                 resources: Optional[Dict[str, Any]] = None,
                 concurrency: Optional[Dict[str, Any]] = None,
                 timeout: float = settings.HTTP_TIMEOUT):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._headers = {str(k): str(v) for k, v in (headers or {}).items() if v is not None}
        self._resources = {
            name: ResourceConfig.model_validate(cfg) for name, cfg in (resources or {}).items()
        }
        self._concurrency = ConcurrencyConfig.model_validate(concurrency or {})

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _url(self, path: str) -> str:
        path = path.lstrip("/")
        if not self.base_url:
            return f"/{path}"
        return f"{self.base_url}/{path}" if path else self.base_url

    def _resolve(self, resource: Optional[str], entity_type: Optional[str]) -> _Resolved:
        resource = resource or self._defaults.get("resource") or (
            f"{entity_type.lower()}s" if entity_type else "resource"
        )
        cfg = self._resources.get(resource, ResourceConfig())
        base_path = cfg.path or resource
        return _Resolved(
            resource=resource,
            entityType=cfg.entityType or entity_type or self._entity_type,
            keyField=cfg.keyField or self._key_field,
            versionField=cfg.versionField or self._version_field,
            basePath=base_path,
            itemPath=cfg.itemPath or f"{base_path}/{{id}}",
        )

    def _item_url(self, resolved: _Resolved, record_id: str) -> str:
        return self._url(resolved.itemPath.replace("{id}", quote(str(record_id), safe="")))

    def _list_params(self, spec: QuerySpec) -> Dict[str, Any]:
        params: Dict[str, Any] = dict(spec.params)

        if isinstance(spec.filter, dict):
            for key, value in spec.filter.items():
                if value is not None:
                    params[key] = value

        if spec.sort:
            params["sort"] = ",".join(
                f"-{s.field}" if s.dir == "desc" else s.field for s in spec.sort if s.field
            )

        page = spec.page
        if page.mode == PageMode.PAGE:
            params["page"] = page.page
        elif page.mode == PageMode.CURSOR:
            if page.after is not None:
                params["after"] = page.after
        else:
            params["offset"] = page.offset
        params["limit"] = page.limit
        return params

    def _normalize(self, record: Any, index: int, resolved: _Resolved, fallback_version: str) -> Dict[str, Any]:
        if isinstance(record, dict):
            out = copy.deepcopy(record)
        else:
            out = {resolved.keyField: str(index), "value": record}
        if out.get(resolved.versionField) is None:
            out[resolved.versionField] = fallback_version
        if out.get(resolved.keyField) is not None:
            out[resolved.keyField] = str(out[resolved.keyField])
        return out

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {**self._headers, **kwargs.pop("headers", {})}
        try:
            return await self._get_client().request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {url} failed: {e}")
            raise TransportError(f"{method} {url} failed: {e}") from e

    async def query(self, spec: QuerySpec) -> QueryResult:
        resolved = self._resolve(spec.resource, spec.entityType)
        url = self._url(resolved.basePath)
        response = await self._request("GET", url, params=self._list_params(spec))
        if not response.is_success:
            logger.error(f"Query {url} failed with HTTP {response.status_code}")
            raise TransportError(f"GET {url} returned HTTP {response.status_code}", response.status_code)

        items, meta = _coerce_list_payload(_parse_json(response))

        total = _as_int(response.headers.get("x-total-count"))
        if total is None:
            body_page_info = meta.get("pageInfo") if isinstance(meta.get("pageInfo"), dict) else {}
            for candidate in (meta.get("totalCount"), meta.get("total"), body_page_info.get("totalCount")):
                total = _as_int(candidate)
                if total is not None:
                    break
        if total is None:
            total = len(items)

        page_info_data = dict(meta.get("pageInfo") or {}) if isinstance(meta.get("pageInfo"), dict) else {}
        page_info_data.update(mode=spec.page.mode, limit=spec.page.limit, totalCount=total)
        page_info = PageInfo.model_validate(page_info_data)

        fallback_version = response.headers.get(self._concurrency.etagHeader) or "0"
        entities = []
        result = []
        for index, raw in enumerate(items):
            record = self._normalize(raw, index, resolved, fallback_version)
            record_id = record.get(resolved.keyField)
            if record_id is None:
                record_id = str(index)
                record[resolved.keyField] = record_id
            entities.append(record)
            result.append(EntityRef(type=resolved.entityType, id=record_id))

        return QueryResult(
            entities={resolved.entityType: entities},
            result=result,
            pageInfo=page_info,
            meta={
                "resource": resolved.resource,
                "queryKey": make_query_key(spec),
                "fetchedAt": time.time(),
                "httpStatus": response.status_code,
            },
        )

    async def _fetch_latest(self, resolved: _Resolved, record_id: str):
        response = await self._request("GET", self._item_url(resolved, record_id))
        etag = response.headers.get(self._concurrency.etagHeader)
        body = _parse_json(response) if response.is_success else None
        record = self._normalize(body, 0, resolved, etag or "0") if isinstance(body, dict) else None
        if record is not None and record.get(resolved.versionField) is not None:
            latest = str(record[resolved.versionField])
        else:
            latest = etag
        return record, latest

    def _rejection_or_raise(self, op: PendingOp, method: str, response: httpx.Response) -> OpResult:
        code = REJECTION_CODES.get(response.status_code)
        body = _parse_json(response)
        message = f"HTTP {response.status_code}"
        if isinstance(body, dict) and (body.get("message") or body.get("detail") or body.get("error")):
            message = str(body.get("message") or body.get("detail") or body.get("error"))
        if code is None:
            logger.error(f"{method} for op {op.opId} failed with HTTP {response.status_code}")
            raise TransportError(f"{method} returned HTTP {response.status_code}: {message}", response.status_code)
        return rejected(op.opId, code, message, response.status_code)

    def _precondition_headers(self, op: PendingOp) -> Dict[str, str]:
        if self._concurrency.mode == "etag" and op.baseVersion is not None:
            return {self._concurrency.ifMatchHeader: op.baseVersion}
        return {}

    async def _conflict(self, op: PendingOp, resolved: _Resolved, response: httpx.Response) -> ConflictResult:
        server, latest = await self._fetch_latest(resolved, op.entity.id)
        return ConflictResult(opId=op.opId, latestVersion=latest, server=server,
                              local=op, httpStatus=response.status_code)

    async def mutate(self, ops: List[PendingOp], view_meta: Any = None) -> MutateResult:
        result = MutateResult(meta={"mutatedAt": time.time()})
        meta_resource = getattr(view_meta, "resource", None)
        meta_entity_type = getattr(view_meta, "entityType", None)

        for op in ops:
            resolved = self._resolve(meta_resource, op.entity.type or meta_entity_type)

            if op.type == OperationType.CREATE:
                data = copy.deepcopy(op.data or {})
                response = await self._request("POST", self._url(resolved.basePath), json=data)
                if not response.is_success:
                    result.rejected.append(self._rejection_or_raise(op, "POST", response))
                    continue
                body = _parse_json(response)
                etag = response.headers.get(self._concurrency.etagHeader)
                record = self._normalize(body if isinstance(body, dict) else data, 0, resolved, etag or "0")
                result.entities.setdefault(resolved.entityType, []).append(record)
                server_id = record.get(resolved.keyField)
                result.applied.append(OpResult(opId=op.opId, status="applied",
                                               serverId=None if server_id is None else str(server_id)))
                continue

            if op.type not in (OperationType.UPDATE, OperationType.DELETE):
                logger.warning(f"Unknown operation type: {op.type}")
                result.rejected.append(rejected(op.opId, "unsupported", f"Unsupported op type: {op.type}"))
                continue

            if op.entity.id is None:
                result.rejected.append(rejected(op.opId, "invalid", f"{op.type} requires entity.id"))
                continue

            url = self._item_url(resolved, op.entity.id)
            if op.type == OperationType.UPDATE:
                payload = copy.deepcopy(op.patch if op.patch is not None else (op.data or {}))
                response = await self._request("PATCH", url, json=payload, headers=self._precondition_headers(op))
            else:
                response = await self._request("DELETE", url, headers=self._precondition_headers(op))

            if response.status_code in CONFLICT_STATUSES:
                result.conflicts.append(await self._conflict(op, resolved, response))
                continue
            if not response.is_success:
                result.rejected.append(self._rejection_or_raise(op, op.type.upper(), response))
                continue

            if op.type == OperationType.UPDATE:
                body = _parse_json(response)
                etag = response.headers.get(self._concurrency.etagHeader)
                record = self._normalize(
                    body if isinstance(body, dict) else {**payload, resolved.keyField: op.entity.id},
                    0, resolved, etag or op.baseVersion or "0",
                )
                if record.get(resolved.keyField) is None:
                    record[resolved.keyField] = op.entity.id
                result.entities.setdefault(resolved.entityType, []).append(record)

            result.applied.append(OpResult(opId=op.opId, status="applied"))

        return result
