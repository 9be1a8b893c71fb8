# recordsync/app.py - Reference REST endpoint over any data source

from fastapi import FastAPI, HTTPException, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from typing import List, Optional, Dict, Any
from datetime import datetime
import logging

from recordsync_config import settings
from recordsync_database import SqliteDataSource
from recordsync_models import (
    DataType, EntityRef, OperationType, PageMode, PageState, PendingOp, QuerySpec, SortSpec, ViewConfig,
)

# Setup logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Query parameters that control paging/sorting; everything else filters
RESERVED_PARAMS = {"page", "offset", "after", "limit", "sort"}

def parse_sort(value: Optional[str]) -> List[SortSpec]:
    """"a,-b" -> [a asc, b desc]"""
    specs = []
    for part in (value or "").split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith("-"):
            specs.append(SortSpec(field=part[1:], dir="desc"))
        else:
            specs.append(SortSpec(field=part.lstrip("+"), dir="asc"))
    return specs

def parse_page(params: Dict[str, str]) -> PageState:
    limit = int(params.get("limit", settings.DEFAULT_PAGE_LIMIT))
    if "after" in params:
        return PageState(mode=PageMode.CURSOR, after=params["after"], limit=limit)
    if "page" in params:
        return PageState(mode=PageMode.PAGE, page=int(params["page"]), limit=limit)
    return PageState(mode=PageMode.OFFSET, offset=int(params.get("offset", 0)), limit=limit)

def match_params(filters: Dict[str, str]):
    """Query strings are text, so compare against the stringified field value"""
    def predicate(record: Dict[str, Any]) -> bool:
        return all(str(record.get(k)) == v for k, v in filters.items())
    predicate.__qualname__ = f"match_params({sorted(filters.items())})"
    return predicate

def strip_etag(value: Optional[str]) -> Optional[str]:
    """W/"3" -> 3"""
    if value is None:
        return None
    value = value.strip()
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"')

def etag_header(config: ViewConfig, record: Dict[str, Any]) -> Dict[str, str]:
    version = record.get(config.versionField)
    return {} if version is None else {"ETag": f'"{version}"'}


def create_app(data_source: Any, resources: Dict[str, ViewConfig], title: str = "RecordSync API") -> FastAPI:
    """Expose each configured resource of a data source over REST"""
    app = FastAPI(
        title=title,
        description="Reference REST endpoint with ETag / If-Match concurrency",
        version="1.0.0"
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["ETag", "X-Total-Count"],
    )

    app.state.data_source = data_source
    app.state.resources = resources

    def get_config(resource: str) -> ViewConfig:
        config = resources.get(resource)
        if config is None:
            raise HTTPException(status_code=404, detail=f"Unknown resource: {resource}")
        return config

    async def find_record(config: ViewConfig, record_id: str) -> Optional[Dict[str, Any]]:
        spec = QuerySpec(
            resource=config.resource,
            entityType=config.entityType,
            filter=match_params({config.keyField: record_id}),
            page=PageState(mode=PageMode.OFFSET, limit=1),
        )
        result = await data_source.query(spec)
        items = result.entities.get(config.entityType, [])
        return items[0] if items else None

    async def apply_op(op: PendingOp, config: ViewConfig):
        result = await data_source.mutate([op], config)
        if result.conflicts:
            conflict = result.conflicts[0]
            raise HTTPException(
                status_code=412,
                detail=f"Version mismatch, latest version is {conflict.latestVersion}"
            )
        if result.rejected:
            error = result.rejected[0].error
            status_code = 404 if error.code == "not_found" else 409 if error.code == "duplicate" else 422
            raise HTTPException(status_code=status_code, detail=error.message)
        return result

    # Health check endpoint
    @app.get("/healthz")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "resources": sorted(resources),
        }

    @app.get("/api/{resource}")
    async def list_records(resource: str, request: Request):
        """List records with filtering, sorting and paging"""
        config = get_config(resource)
        params = dict(request.query_params)
        filters = {k: v for k, v in params.items() if k not in RESERVED_PARAMS}
        try:
            spec = QuerySpec(
                resource=config.resource,
                entityType=config.entityType,
                filter=match_params(filters) if filters else None,
                sort=parse_sort(params.get("sort")),
                page=parse_page(params),
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid paging parameters: {e}")

        try:
            result = await data_source.query(spec)
        except Exception as e:
            logger.error(f"List {resource} failed: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to list {resource}")

        items = result.entities.get(config.entityType, [])
        return JSONResponse(
            content={
                "items": items,
                "totalCount": result.pageInfo.totalCount,
                "pageInfo": result.pageInfo.model_dump(exclude_none=True),
            },
            headers={"X-Total-Count": str(result.pageInfo.totalCount)},
        )

    @app.get("/api/{resource}/{record_id}")
    async def get_record(resource: str, record_id: str):
        """Get a single record"""
        config = get_config(resource)
        try:
            record = await find_record(config, record_id)
        except Exception as e:
            logger.error(f"Get {resource}/{record_id} failed: {e}")
            raise HTTPException(status_code=500, detail="Failed to retrieve record")
        if record is None:
            raise HTTPException(status_code=404, detail="Record not found")
        return JSONResponse(content=record, headers=etag_header(config, record))

    @app.post("/api/{resource}", status_code=201)
    async def create_record(resource: str, data: Dict[str, Any]):
        """Create a record"""
        config = get_config(resource)
        data.pop(config.versionField, None)
        op = PendingOp(
            opId="http-create",
            type=OperationType.CREATE.value,
            entity=EntityRef(type=config.entityType, id=data.get(config.keyField)),
            data=data,
        )
        try:
            result = await apply_op(op, config)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Create {resource} failed: {e}")
            raise HTTPException(status_code=500, detail="Failed to create record")

        created = result.entities.get(config.entityType, [{}])[0]
        return JSONResponse(status_code=201, content=created, headers=etag_header(config, created))

    @app.patch("/api/{resource}/{record_id}")
    async def patch_record(resource: str, record_id: str, updates: Dict[str, Any],
                           if_match: Optional[str] = Header(None)):
        """Partially update a record; If-Match guards against lost updates"""
        config = get_config(resource)
        updates.pop(config.versionField, None)
        updates.pop(config.keyField, None)
        op = PendingOp(
            opId="http-update",
            type=OperationType.UPDATE.value,
            entity=EntityRef(type=config.entityType, id=record_id),
            patch=updates,
            baseVersion=strip_etag(if_match),
        )
        try:
            result = await apply_op(op, config)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Patch {resource}/{record_id} failed: {e}")
            raise HTTPException(status_code=500, detail="Failed to patch record")

        updated = result.entities.get(config.entityType, [{}])[0]
        return JSONResponse(content=updated, headers=etag_header(config, updated))

    @app.delete("/api/{resource}/{record_id}", status_code=204)
    async def delete_record(resource: str, record_id: str, if_match: Optional[str] = Header(None)):
        """Delete a record"""
        config = get_config(resource)
        op = PendingOp(
            opId="http-delete",
            type=OperationType.DELETE.value,
            entity=EntityRef(type=config.entityType, id=record_id),
            baseVersion=strip_etag(if_match),
        )
        try:
            await apply_op(op, config)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Delete {resource}/{record_id} failed: {e}")
            raise HTTPException(status_code=500, detail="Failed to delete record")
        return Response(status_code=204)

    return app


# Demo application backed by SQLite
DEMO_MODEL = {
    "name": "Task",
    "fields": {
        "id": {"type": DataType.ID},
        "title": {"type": DataType.STRING, "required": True},
        "notes": {"type": DataType.LONG_TEXT},
        "done": {"type": DataType.BOOLEAN},
        "estimate": {"type": DataType.NUMBER},
    },
}

DEMO_RESOURCES = {
    "tasks": ViewConfig(name="tasks", resource="tasks", entityType="Task"),
}

db = SqliteDataSource(settings.DATABASE_URL, entity_type="Task")
db.init(DEMO_MODEL, {"entityType": "Task"})
app = create_app(db, DEMO_RESOURCES)

@app.on_event("startup")
async def startup_event():
    """Open the database on startup"""
    await db.open()
    logger.info("Database initialized")

@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    await db.close()
    logger.info("Database connection closed")

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("recordsync_app:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
