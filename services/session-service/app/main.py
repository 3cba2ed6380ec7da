import asyncio
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import SERVICE_NAME
from .consumer import start_consumer
from .db import SessionLocal
from .errors import SessionServiceError
from .expiry_worker import expiry_loop
from .middleware import RequestLoggingMiddleware
from .metrics import COUNTERS, Metrics
from .rabbitmq import publisher
from .routes import get_metrics, router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Session Service")

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)

_consumer_conn = None
_stop_event = asyncio.Event()
_expiry_task = None


@app.exception_handler(SessionServiceError)
async def session_error_handler(request: Request, exc: SessionServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        problems.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
    return JSONResponse(status_code=400, content={"detail": "; ".join(problems) or "Invalid request"})


@app.get("/health")
async def health():
    return {"status": "ok", "service": SERVICE_NAME, "events_enabled": publisher.enabled}


@app.get("/metrics")
async def metrics(counters: Metrics = Depends(get_metrics)):
    return await counters.snapshot(COUNTERS)


@app.on_event("startup")
async def startup():
    global _consumer_conn, _expiry_task
    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing: %s", e)

    # grants are applied asynchronously; the API works without the broker
    try:
        if publisher.enabled:
            _consumer_conn = await start_consumer()
    except Exception as e:
        _consumer_conn = None
        logger.warning("extension consumer failed to start: %s", e)

    _expiry_task = asyncio.create_task(
        expiry_loop(_stop_event, SessionLocal, publisher=publisher, metrics=get_metrics())
    )


@app.on_event("shutdown")
async def shutdown():
    _stop_event.set()
    if _expiry_task:
        try:
            await _expiry_task
        except Exception:
            logger.exception("expiry worker exited with an error")
    try:
        if _consumer_conn and not _consumer_conn.is_closed:
            await _consumer_conn.close()
    except Exception:
        logger.exception("failed to close consumer connection")
    await publisher.close()
