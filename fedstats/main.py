import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fedstats.collector import AggregateCollector
from fedstats.config import settings
from fedstats.errors import AnalyticsError, error_from_kind
from fedstats.federations import (
    Federation,
    Member,
    add_federation,
    add_member,
    delete_federation,
    get_federation,
    list_federations,
    registry_status,
    remove_member,
    update_member,
)
from fedstats.models import (
    AnalyticsQuery,
    AnalyticsQueryListResponse,
    AnovaRequest,
    ChiSquareRequest,
    DescriptiveRequest,
    FederationIn,
    FederationOut,
    MemberIn,
    MemberOut,
    QueryHandle,
    QueryStatus,
    TTestRequest,
)
from fedstats.queries import QueryManager
from fedstats.store import create_store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)


def _mask_token(token: str) -> str:
    if not token:
        return ""
    return token[0] + "*" * (len(token) - 1) if len(token) > 1 else "*"


def _member_to_out(member: Member) -> MemberOut:
    return MemberOut(
        id=member.id,
        name=member.name,
        url=member.url,
        device_groups=member.device_groups,
        api_token=_mask_token(member.api_token),
    )


def _federation_to_out(fed: Federation) -> FederationOut:
    return FederationOut(
        id=fed.id,
        name=fed.name,
        description=fed.description,
        members=[_member_to_out(m) for m in fed.members],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = create_store()
    await store.open()
    collector = AggregateCollector()
    app.state.manager = QueryManager(store, collector)
    log.info("Query store ready (backend: %s), registry: %s", store.backend, registry_status())

    yield

    # Shutdown
    await app.state.manager.shutdown()
    await collector.aclose()
    await store.close()


app = FastAPI(title="fedstats", version="0.1.0", lifespan=lifespan)


def get_manager(request: Request) -> QueryManager:
    return request.app.state.manager


@app.exception_handler(AnalyticsError)
async def analytics_error_handler(request: Request, exc: AnalyticsError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(p) for p in first.get("loc", ()))
    message = f"{loc}: {first.get('msg', 'invalid request')}" if loc else "invalid request"
    return JSONResponse(
        status_code=422,
        content={"error": {"kind": "ValidationError", "message": message}},
    )


@app.get("/health")
async def health(manager: QueryManager = Depends(get_manager)):
    return {"status": "ok", "store": manager.store.backend, "registry": registry_status()}


# ── Analytics API routes ──


async def _submit(
    manager: QueryManager,
    federation_id: str,
    kind: str,
    body: BaseModel,
    wait: bool,
) -> JSONResponse:
    """Submit and either answer with the result or with a pollable handle."""
    query = await manager.submit(federation_id, kind, body.model_dump(mode="json"))
    if wait:
        query = await manager.wait(federation_id, query.id, settings.query.sync_wait_s)
        if query.status == QueryStatus.COMPLETED:
            return JSONResponse(content=query.result.model_dump(mode="json"))
        if query.status == QueryStatus.FAILED:
            raise error_from_kind(query.error_kind, query.error_message)
    handle = QueryHandle(query_id=query.id, status=query.status)
    return JSONResponse(status_code=202, content=handle.model_dump(mode="json"))


@app.post("/federations/{federation_id}/analytics/descriptive")
async def api_descriptive(
    federation_id: str,
    req: DescriptiveRequest,
    wait: bool = True,
    manager: QueryManager = Depends(get_manager),
):
    return await _submit(manager, federation_id, "descriptive", req, wait)


@app.post("/federations/{federation_id}/analytics/ttest")
@app.post("/federations/{federation_id}/analytics/t-test", include_in_schema=False)
async def api_t_test(
    federation_id: str,
    req: TTestRequest,
    wait: bool = True,
    manager: QueryManager = Depends(get_manager),
):
    return await _submit(manager, federation_id, "t-test", req, wait)


@app.post("/federations/{federation_id}/analytics/chisquare")
@app.post("/federations/{federation_id}/analytics/chi-square", include_in_schema=False)
async def api_chi_square(
    federation_id: str,
    req: ChiSquareRequest,
    wait: bool = True,
    manager: QueryManager = Depends(get_manager),
):
    return await _submit(manager, federation_id, "chi-square", req, wait)


@app.post("/federations/{federation_id}/analytics/anova")
async def api_anova(
    federation_id: str,
    req: AnovaRequest,
    wait: bool = True,
    manager: QueryManager = Depends(get_manager),
):
    return await _submit(manager, federation_id, "anova", req, wait)


@app.get(
    "/federations/{federation_id}/analytics/queries",
    response_model=AnalyticsQueryListResponse,
)
async def api_list_queries(
    federation_id: str,
    limit: int = 50,
    offset: int = 0,
    manager: QueryManager = Depends(get_manager),
):
    return await manager.list_queries(federation_id, limit, offset)


@app.get(
    "/federations/{federation_id}/analytics/queries/{query_id}",
    response_model=AnalyticsQuery,
)
async def api_get_query(
    federation_id: str,
    query_id: str,
    manager: QueryManager = Depends(get_manager),
):
    return await manager.get_query(federation_id, query_id)


@app.delete(
    "/federations/{federation_id}/analytics/queries/{query_id}",
    response_model=AnalyticsQuery,
)
async def api_cancel_query(
    federation_id: str,
    query_id: str,
    manager: QueryManager = Depends(get_manager),
):
    return await manager.cancel(federation_id, query_id)


# ── Federation admin routes ──


@app.get("/federations")
async def api_list_federations():
    return [_federation_to_out(f) for f in list_federations()]


@app.post("/federations")
async def api_add_federation(req: FederationIn):
    fed = Federation(
        name=req.name,
        description=req.description,
        members=[Member(**m.model_dump()) for m in req.members],
    )
    return _federation_to_out(add_federation(fed))


@app.get("/federations/{federation_id}")
async def api_get_federation(federation_id: str):
    fed = get_federation(federation_id)
    if not fed:
        raise HTTPException(status_code=404, detail="Federation not found")
    return _federation_to_out(fed)


@app.delete("/federations/{federation_id}")
async def api_delete_federation(federation_id: str):
    if not delete_federation(federation_id):
        raise HTTPException(status_code=404, detail="Federation not found")
    return {"ok": True}


@app.post("/federations/{federation_id}/members")
async def api_add_member(federation_id: str, req: MemberIn):
    member = add_member(federation_id, Member(**req.model_dump()))
    if not member:
        raise HTTPException(status_code=404, detail="Federation not found")
    return _member_to_out(member)


@app.put("/federations/{federation_id}/members/{member_id}")
async def api_update_member(federation_id: str, member_id: str, req: MemberIn):
    member = update_member(federation_id, member_id, req.model_dump())
    if not member:
        raise HTTPException(status_code=404, detail="Member not found")
    return _member_to_out(member)


@app.delete("/federations/{federation_id}/members/{member_id}")
async def api_remove_member(federation_id: str, member_id: str):
    if not remove_member(federation_id, member_id):
        raise HTTPException(status_code=404, detail="Member not found")
    return {"ok": True}
