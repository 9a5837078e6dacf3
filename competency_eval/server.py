import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from competency_eval.config import settings
from competency_eval.db.database import connect, init_db
from competency_eval.db.level_store import SqliteLevelStore
from competency_eval.errors import InvalidTierError, SessionStateError, UpstreamUnavailableError
from competency_eval.services.level_system import LevelSystem

logger = logging.getLogger(__name__)

# CORS: use CORS_ORIGINS (comma-separated) in prod, localhost defaults otherwise.
if settings.cors_origins:
    _allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
else:
    _allowed_origins = [
        "http://localhost:8000",
        "http://127.0.0.1:8000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    db = await connect()
    store = SqliteLevelStore(db)
    app.state.level_system = LevelSystem(store, analytics=store)
    logger.info("Level system ready (default tier %s)", settings.default_tier)
    try:
        yield
    finally:
        await db.close()


app = FastAPI(title="Competency Eval", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type"],
)


@app.exception_handler(InvalidTierError)
async def invalid_tier_handler(request: Request, exc: InvalidTierError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(SessionStateError)
async def session_state_handler(request: Request, exc: SessionStateError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(UpstreamUnavailableError)
async def upstream_handler(request: Request, exc: UpstreamUnavailableError):
    logger.warning("Request to %s failed: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Level data is temporarily unavailable"})


# Import and register routes
from competency_eval.routes.levels import router as levels_router  # noqa: E402
from competency_eval.routes.placement import router as placement_router  # noqa: E402
from competency_eval.routes.recommendations import router as recommendations_router  # noqa: E402

app.include_router(levels_router)
app.include_router(placement_router)
app.include_router(recommendations_router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}
