"""
Quiz answer engine HTTP service

Serves answer submission, live leaderboards and reconciliation/validation
operations on top of the engine assembled in quiz_engine.container.
"""
from contextlib import asynccontextmanager
import logging
import time

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from quiz_engine.api import leaderboard, quizzes, sync
from quiz_engine.config import settings
from quiz_engine.container import Container, get_container, shutdown_container
from quiz_engine.database import init_db
from quiz_engine.exceptions import QuizEngineError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, assemble the engine and start the periodic sweep"""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    try:
        init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {str(e)}")
        raise

    engine = get_container()
    engine.scheduler.start()
    logger.info(
        f"Engine ready: store={settings.STORE_BACKEND}, events={settings.EVENT_BACKEND}, "
        f"sync workers={settings.SYNC_WORKERS}"
    )

    yield

    # Drains queued reconciliations before the process exits
    logger.info("Stopping sync workers")
    shutdown_container()


def error_body(error: str, message, status_code: int) -> dict:
    return {"error": error, "message": message, "status_code": status_code}


def register_exception_handlers(app: FastAPI) -> None:
    """Every error leaves the service as {error, message, status_code}"""

    @app.exception_handler(QuizEngineError)
    async def engine_error_handler(request: Request, exc: QuizEngineError):
        if exc.status_code >= 500:
            logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.error_code, exc.message, exc.status_code)
        )

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        # Rejected attempts carry a {reason, message} dict as detail
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body("http_error", exc.detail, exc.status_code)
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {str(exc)}", exc_info=True)
        body = error_body("internal_server_error", "An unexpected error occurred.", 500)
        if settings.DEBUG:
            body["detail"] = str(exc)
        return JSONResponse(status_code=500, content=body)


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Real-time quiz answer engine with live leaderboards and durable reconciliation",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def time_requests(request: Request, call_next):
    """Log each request and expose its latency as X-Response-Time-Ms"""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000

    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.1f}"
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)")
    return response


register_exception_handlers(app)

app.include_router(quizzes.router)
app.include_router(leaderboard.router)
app.include_router(sync.router)


@app.get("/health")
def health_check(engine: Container = Depends(get_container)):
    """
    Liveness plus a round trip to the ephemeral store

    - 200 with status "healthy" when the store answers
    - 503 with status "degraded" otherwise
    """
    checks = {}
    try:
        engine.store.get("health/ping")
        checks["store"] = "ok"
    except Exception as e:
        logger.warning(f"Store health check failed: {str(e)}")
        checks["store"] = "unreachable"

    healthy = all(value == "ok" for value in checks.values())
    body = {
        "status": "healthy" if healthy else "degraded",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "backends": {"store": settings.STORE_BACKEND, "events": settings.EVENT_BACKEND},
        "checks": checks,
        "active_quizzes": len(engine.sessions.active_quiz_ids()) if healthy else None,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


@app.get("/")
def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "endpoints": [
            "POST /api/quizzes/{quiz_id}/join",
            "POST /api/quizzes/{quiz_id}/answers",
            "POST /api/quizzes/{quiz_id}/finish",
            "GET /api/quizzes/{quiz_id}/leaderboard",
            "POST /api/quizzes/{quiz_id}/sync",
            "GET /api/quizzes/{quiz_id}/session",
            "GET /api/quizzes/{quiz_id}/validation",
            "GET /api/quizzes/{quiz_id}/results",
        ],
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "quiz_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
