"""FitCoach API application.

Run with ``uvicorn coach_backend.main:app``. On startup the database is
initialized, the LLM adapter is created and the knowledge upload directory
is prepared.
"""

import hashlib
import os
import time
from contextlib import asynccontextmanager

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from coach_backend.api.routes import router
from coach_backend.core.database import init_db
from coach_backend.core.errors import ErrorType, default_message, error_body, register_error_handlers
from coach_backend.core.llm_adapter import LLMAdapter

load_dotenv()

logger = structlog.get_logger(__name__)

RATE_LIMIT = int(os.environ.get("RATE_LIMIT_PER_MIN", "30"))
RATE_WINDOW_SECONDS = 60
_rate_buckets: dict[str, list[float]] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()

    app.state.llm_adapter = LLMAdapter()
    if not app.state.llm_adapter.is_healthy():
        logger.error("startup.llm_unconfigured", hint="Set CEREBRAS_API_KEY or GROQ_API_KEY in .env")

    upload_dir = os.environ.get("UPLOAD_DIR", "data/uploads")
    os.makedirs(upload_dir, exist_ok=True)

    logger.info("startup.complete", upload_dir=upload_dir, rate_limit=RATE_LIMIT)
    yield
    logger.info("shutdown.complete")


app = FastAPI(
    title="FitCoach API",
    description="AI fitness coach chat with persistent conversations",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


def _rate_limit_key(request: Request) -> str:
    """Hashed bearer token for members, client address for guests."""
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return "token:" + hashlib.sha256(auth[7:].strip().encode()).hexdigest()
    return "host:" + (request.client.host if request.client else "unknown")


def _drop_idle_buckets(now: float) -> None:
    idle = [k for k, stamps in _rate_buckets.items() if not stamps or now - stamps[-1] >= RATE_WINDOW_SECONDS]
    for key in idle:
        del _rate_buckets[key]


def _take_rate_slot(key: str) -> bool:
    """Record a request for ``key``; False when its one-minute window is full."""
    now = time.monotonic()
    _drop_idle_buckets(now)
    window = [t for t in _rate_buckets.get(key, []) if now - t < RATE_WINDOW_SECONDS]
    if len(window) >= RATE_LIMIT:
        _rate_buckets[key] = window
        return False
    window.append(now)
    _rate_buckets[key] = window
    return True


@app.middleware("http")
async def chat_rate_limit(request: Request, call_next):
    if request.method == "POST" and request.url.path == "/api/chat":
        key = _rate_limit_key(request)
        if not _take_rate_slot(key):
            logger.warning("rate_limit.exceeded", caller=key.split(":", 1)[0])
            return JSONResponse(
                status_code=429,
                content=error_body(ErrorType.RATE_LIMIT.value, default_message(ErrorType.RATE_LIMIT),
                                   ErrorType.RATE_LIMIT),
            )
    return await call_next(request)


app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("coach_backend.main:app", host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
