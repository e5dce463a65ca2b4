from fastapi import FastAPI, Request
from fastapi.openapi.utils import get_openapi
from starlette.responses import StreamingResponse
from fastapi.responses import JSONResponse, Response
from starlette.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional
import asyncio
import json
import time

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from mockmate import config
from mockmate.channel import Channel
from mockmate.errors import MockMateError
from mockmate.events import encode_event
from mockmate.gateway import GenerationGateway
from mockmate.ledger import WORK_TYPES, ConsumptionLedger
from mockmate.metrics import HTTP_REQUEST_DURATION_SECONDS, HTTP_REQUESTS_TOTAL
from mockmate.middleware.request_id import RequestIdMiddleware
from mockmate.orchestrator import SessionOrchestrator
from mockmate.providers.base import GenerationClient
from mockmate.providers.factory import get_generation_client
from mockmate.recovery import RecoveryWriter, ResultStore
from mockmate.sessions import SessionRegistry

logger = config.get_logger("api")


def build_orchestrator(
    client: Optional[GenerationClient] = None,
    clock: Callable[[], float] = time.time,
) -> SessionOrchestrator:
    return SessionOrchestrator(
        ledger=ConsumptionLedger(),
        registry=SessionRegistry(clock=clock),
        gateway=GenerationGateway(client or get_generation_client()),
        writer=RecoveryWriter(ResultStore()),
        clock=clock,
    )


async def _sweep_loop(orchestrator: SessionOrchestrator) -> None:
    while True:
        await asyncio.sleep(max(0.01, config.SESSION_SWEEP_INTERVAL_SECONDS))
        try:
            expired = await orchestrator.expire_idle()
            if expired:
                logger.info(json.dumps({"event": "session_sweep", "expired": expired}))
        except Exception as e:
            logger.exception(json.dumps({"event": "session_sweep_failed", "error": str(e)}))


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    orchestrator = build_orchestrator()
    app.state.orchestrator = orchestrator  # type: ignore[attr-defined]
    app.state.sweep_task = asyncio.create_task(_sweep_loop(orchestrator))  # type: ignore[attr-defined]
    logger.info(json.dumps({
        "event": "service_started",
        "provider": orchestrator.gateway.provider_name,
        "model": orchestrator.gateway.model,
    }))
    try:
        yield
    finally:
        # Shutdown
        sweep: Optional[asyncio.Task] = getattr(app.state, "sweep_task", None)
        if sweep:
            sweep.cancel()
            try:
                await sweep
            except asyncio.CancelledError:
                pass
        await app.state.orchestrator.shutdown()  # type: ignore[attr-defined]


app = FastAPI(
    title="MockMate AI API",
    description="AI interview practice: streamed mock interviews, resume quizzes and metered usage.",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id"],
    allow_credentials=False,
)
app.add_middleware(RequestIdMiddleware)


# HTTP metrics middleware
@app.middleware("http")
async def _http_metrics_middleware(request: Request, call_next):
    t0 = time.perf_counter()
    method = request.method
    path = request.url.path
    status_code = 500
    try:
        response = await call_next(request)
        status_code = getattr(response, "status_code", 500)
        return response
    except Exception:
        status_code = 500
        raise
    finally:
        status_class = f"{status_code // 100}xx"
        HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status_class=status_class).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path).observe(time.perf_counter() - t0)


@app.exception_handler(MockMateError)
async def _mockmate_error_handler(request: Request, exc: MockMateError):
    return JSONResponse({"detail": exc.to_dict()}, status_code=exc.status_code)


async def _with_heartbeat(agen: AsyncIterator[str], interval_s: float) -> AsyncIterator[str]:
    """Yield from agen but emit SSE comment heartbeats every interval when idle."""
    nxt_task = asyncio.ensure_future(agen.__anext__())
    try:
        while True:
            sleep_task = asyncio.ensure_future(asyncio.sleep(max(0.001, float(interval_s))))
            done, _ = await asyncio.wait({nxt_task, sleep_task}, return_when=asyncio.FIRST_COMPLETED)
            if nxt_task in done:
                sleep_task.cancel()
                try:
                    chunk = nxt_task.result()
                except StopAsyncIteration:
                    break
                nxt_task = asyncio.ensure_future(agen.__anext__())
                yield chunk
            else:
                # Heartbeat comment (SSE ignores comment lines)
                yield ": ping\n\n"
    finally:
        nxt_task.cancel()


def _sse_response(channel: Channel, request_id: Optional[str]) -> StreamingResponse:
    async def _events() -> AsyncIterator[str]:
        async for event in channel:
            yield encode_event(event)

    async def _stream() -> AsyncIterator[str]:
        try:
            async for chunk in _with_heartbeat(_events(), config.SSE_HEARTBEAT_SECONDS):
                yield chunk
        finally:
            # Client gone or stream done: producers stop pushing
            channel.cancel()

    resp = StreamingResponse(_stream(), media_type="text/event-stream; charset=utf-8")
    if request_id:
        resp.headers["X-Request-Id"] = str(request_id)
    # SSE anti-buffering headers
    resp.headers["Cache-Control"] = "no-cache, no-transform"
    resp.headers["Connection"] = "keep-alive"
    # Disable nginx proxy buffering if present
    resp.headers["X-Accel-Buffering"] = "no"
    return resp


def _orchestrator(request: Request) -> SessionOrchestrator:
    return request.app.state.orchestrator


def _request_id(request: Request) -> Optional[str]:
    return getattr(getattr(request, "state", object()), "request_id", None) or request.headers.get("x-request-id")


def _user_id(request: Request) -> Optional[str]:
    return getattr(getattr(request, "state", object()), "user_id", None)


async def _json_body(request: Request) -> Optional[Dict[str, Any]]:
    try:
        payload = await request.json()
    except Exception:
        return None
    return payload if isinstance(payload, dict) else None


def _idempotency_key(request: Request, payload: Dict[str, Any]) -> Optional[str]:
    key = request.headers.get("Idempotency-Key") or payload.get("requestId")
    return str(key) if key else None


def _missing_user() -> JSONResponse:
    return JSONResponse({"detail": "X-User-Id header is required"}, status_code=401)


def _bad_json() -> JSONResponse:
    return JSONResponse({"detail": "Invalid JSON body"}, status_code=400)


@app.get("/health", tags=["meta"], description="Liveness endpoint for health checks.")
async def health():
    return {"status": "ok"}


@app.get("/metrics", tags=["meta"], include_in_schema=False)
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/interview/mock/start", tags=["interview"], description="Start a mock interview; SSE stream of interview events.")
async def mock_interview_start(request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _missing_user()
    payload = await _json_body(request)
    if payload is None:
        return _bad_json()
    request_id = _request_id(request)
    channel = _orchestrator(request).start_mock_interview(
        user_id,
        payload,
        idempotency_key=_idempotency_key(request, payload),
        request_id=request_id,
    )
    return _sse_response(channel, request_id)


@app.post("/interview/mock/answer", tags=["interview"], description="Submit an answer; SSE stream of the next turn.")
async def mock_interview_answer(request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _missing_user()
    payload = await _json_body(request)
    if payload is None:
        return _bad_json()
    session_id = payload.get("sessionId")
    if not session_id or not isinstance(session_id, str):
        return JSONResponse({"detail": "sessionId is required"}, status_code=400)
    request_id = _request_id(request)
    channel = _orchestrator(request).submit_answer(user_id, session_id, payload.get("answer"), request_id=request_id)
    return _sse_response(channel, request_id)


@app.post("/interview/mock/end", tags=["interview"], description="End a mock interview early; SSE stream with the closing event.")
async def mock_interview_end(request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _missing_user()
    payload = await _json_body(request)
    if payload is None:
        return _bad_json()
    session_id = payload.get("sessionId")
    if not session_id or not isinstance(session_id, str):
        return JSONResponse({"detail": "sessionId is required"}, status_code=400)
    request_id = _request_id(request)
    channel = _orchestrator(request).end_interview(user_id, session_id, request_id=request_id)
    return _sse_response(channel, request_id)


@app.post("/interview/resume/quiz/stream", tags=["interview"], description="Generate resume quiz questions; SSE progress stream.")
async def resume_quiz_stream(request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _missing_user()
    payload = await _json_body(request)
    if payload is None:
        return _bad_json()
    request_id = _request_id(request)
    channel = _orchestrator(request).generate_resume_quiz(
        user_id,
        payload,
        idempotency_key=_idempotency_key(request, payload),
        request_id=request_id,
    )
    return _sse_response(channel, request_id)


@app.post("/interview/analyze-resume", tags=["interview"], description="Match a resume against a job description.")
async def analyze_resume(request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _missing_user()
    payload = await _json_body(request)
    if payload is None:
        return _bad_json()
    report = await _orchestrator(request).analyze_resume(user_id, payload, request_id=_request_id(request))
    return {"data": report}


@app.get("/interview/sessions/{session_id}", tags=["interview"], description="Diagnostic read of an in-memory session.")
async def get_session(session_id: str, request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _missing_user()
    session = _orchestrator(request).registry.require(session_id, user_id)
    return session.snapshot()


@app.get("/interview/results/{result_id}", tags=["interview"], description="Fetch a stored interview or quiz result.")
async def get_result(result_id: str, request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _missing_user()
    result = _orchestrator(request).writer.store.get(result_id)
    if result is None or result.user_id != user_id:
        return JSONResponse({"detail": "result not found"}, status_code=404)
    return result.to_dict()


@app.get("/users/me/balance", tags=["billing"], description="Remaining credits per work type and consumption history.")
async def get_balance(request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _missing_user()
    ledger = _orchestrator(request).ledger
    return {
        "userId": user_id,
        "balances": {wt: ledger.balance(user_id, wt) for wt in WORK_TYPES},
        "records": [r.to_dict() for r in ledger.records_for(user_id)],
    }


@app.post("/users/me/credits", tags=["billing"], description="Add credits for a work type.")
async def add_credits(request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _missing_user()
    payload = await _json_body(request)
    if payload is None:
        return _bad_json()
    work_type = payload.get("workType")
    units = payload.get("units")
    if isinstance(units, bool) or not isinstance(units, int):
        return JSONResponse({"detail": "units must be a positive integer"}, status_code=400)
    try:
        balance = await _orchestrator(request).ledger.grant(user_id, str(work_type), units)
    except ValueError as e:
        return JSONResponse({"detail": str(e)}, status_code=400)
    return {"userId": user_id, "workType": work_type, "balance": balance}


@app.get("/service-metrics", tags=["meta"], description="Lightweight service metrics for observability.")
async def service_metrics(request: Request):
    orchestrator = _orchestrator(request)
    return {
        "sessionCount": len(orchestrator.registry),
        "pendingRecords": orchestrator.ledger.pending_count(),
        "resultsCount": len(orchestrator.writer.store),
        "provider": orchestrator.gateway.provider_name,
        "model": orchestrator.gateway.model,
    }


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema["tags"] = [
        {"name": "meta", "description": "Service metadata and liveness"},
        {"name": "interview", "description": "Mock interviews and resume quizzes (SSE)"},
        {"name": "billing", "description": "Credits and consumption records"},
    ]
    openapi_schema["servers"] = [
        {"url": "http://localhost:8000", "description": "Local dev"}
    ]
    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi  # type: ignore[assignment]
