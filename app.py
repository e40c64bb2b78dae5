"""CallScope — call transcript analysis API."""

from dataclasses import dataclass

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from config import settings as config
from config.schemas import AnalysisJob, CallRecord, CallSummary, StatusResponse, TriggerResponse
from config.settings import Settings, configure_logging, load_settings, validate_at_startup
from pipeline.call_sync import list_calls_for_user, resolve_date_range
from pipeline.orchestrator import AnalysisOrchestrator
from services.errors import AppError, ErrorKind, auth_error
from services.llm.client import LLMAnalyzer, check_llm_health
from services.storage.content import make_content_store
from services.store.analyses import AnalysisStore
from services.store.calls import CallStore
from services.store.documents import DocumentCollection

app = FastAPI(
    title="CallScope",
    description="Sales call transcripts to structured coaching analysis, run as background jobs",
    version="0.1.0",
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Wiring ──

@dataclass
class Services:
    settings: Settings
    content_store: object
    calls: CallStore
    analyses: AnalysisStore
    orchestrator: AnalysisOrchestrator


def build_services(settings: Settings) -> Services:
    data_dir = settings.data_dir or None
    calls = CallStore(DocumentCollection("calls", data_dir))
    analyses = AnalysisStore(DocumentCollection("analyses", data_dir))
    content_store = make_content_store(settings)
    orchestrator = AnalysisOrchestrator(
        analyses=analyses,
        calls=calls,
        content_store=content_store,
        analyzer=LLMAnalyzer(model=settings.analysis_model),
        settings=settings,
    )
    return Services(settings, content_store, calls, analyses, orchestrator)


def get_services(request: Request) -> Services:
    return request.app.state.services


@dataclass
class CurrentUser:
    user_id: str
    email: str


def current_user(
    x_user_id: str | None = Header(None),
    x_user_email: str | None = Header(None),
) -> CurrentUser:
    """Identity set by the session layer in front of this service."""
    if not x_user_id or not x_user_email:
        raise auth_error("Missing user identity")
    return CurrentUser(user_id=x_user_id, email=x_user_email.lower().strip())


@app.on_event("startup")
async def startup():
    configure_logging()
    validate_at_startup()
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(load_settings())
    logger.info(f"CallScope started (content={config.CONTENT_BACKEND}, model={config.ANALYSIS_MODEL})")


@app.on_event("shutdown")
async def shutdown():
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.orchestrator.shutdown(timeout_s=services.settings.background_analysis_timeout_ms / 1000)


# ── Errors ──

@app.exception_handler(AppError)
async def app_error_handler(request: Request, err: AppError):
    if err.kind == ErrorKind.EXTERNAL_SERVICE:
        logger.error(f"{request.method} {request.url.path}: {err.message} (service={err.service})")
        status = 502
    elif err.kind == ErrorKind.AUTH:
        logger.warning(f"{request.method} {request.url.path}: {err.message}")
        status = 403 if err.status_code == 403 else 401
    elif err.kind == ErrorKind.NOT_FOUND:
        status = 404
    else:
        status = 400
    return JSONResponse(status_code=status, content=err.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.opt(exception=exc).error(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error", "code": "INTERNAL_ERROR"})


# ── Routes ──

@app.get("/api/health")
async def health(
    check_llm: bool = Query(False, description="Also probe the LLM endpoint"),
    services: Services = Depends(get_services),
):
    """Health check: background jobs in flight, optional LLM reachability."""
    body = {
        "status": "ok",
        "model": services.orchestrator.analyzer.model,
        "content_backend": services.settings.content_backend,
        "analyses_in_flight": services.orchestrator.in_flight,
    }
    if check_llm:
        body["llm"] = await check_llm_health()
    return body


@app.get("/api/calls", response_model=list[CallSummary])
async def list_calls(
    date_from: str | None = Query(None, alias="from"),
    date_to: str | None = Query(None, alias="to"),
    user: CurrentUser = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Calls the user took part in within [from, to] (default: the last 7 days)."""
    start, end = resolve_date_range(date_from, date_to, services.settings.default_lookback_days)
    return await list_calls_for_user(
        user.user_id,
        user.email,
        services.content_store,
        services.calls,
        services.analyses,
        start,
        end,
    )


@app.get("/api/calls/{call_id}", response_model=CallRecord)
async def get_call(
    call_id: str,
    user: CurrentUser = Depends(current_user),
    services: Services = Depends(get_services),
):
    return await services.orchestrator.load_call_for_user(call_id, user.email)


@app.post("/api/calls/{call_id}/analyze", status_code=202, response_model=TriggerResponse)
async def trigger_analysis(
    call_id: str,
    user: CurrentUser = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Start (or re-run) analysis. Returns at once; poll the status endpoint."""
    analysis_id = await services.orchestrator.trigger_analysis(call_id, user.user_id, user.email)
    return TriggerResponse(analysis_id=analysis_id)


@app.get("/api/calls/{call_id}/analysis/status", response_model=StatusResponse)
async def get_analysis_status(
    call_id: str,
    user: CurrentUser = Depends(current_user),
    services: Services = Depends(get_services),
):
    return await services.orchestrator.get_status(call_id, user.user_id)


@app.get("/api/calls/{call_id}/analysis", response_model=AnalysisJob)
async def get_analysis(
    call_id: str,
    user: CurrentUser = Depends(current_user),
    services: Services = Depends(get_services),
):
    return await services.orchestrator.get_latest_analysis(call_id, user.user_id, user.email)


@app.get("/api/analyses/{analysis_id}/status", response_model=StatusResponse)
async def get_job_status(
    analysis_id: str,
    user: CurrentUser = Depends(current_user),
    services: Services = Depends(get_services),
):
    return await services.orchestrator.get_job_status(analysis_id, user.user_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(config.PORT))
