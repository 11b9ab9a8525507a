import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import settings

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from services.coordinator import get_coordinator

    logger.info("🕵️ Detective Online backend starting up...")
    coordinator = get_coordinator()
    if coordinator.settings.require_identity and not coordinator.settings.token_audience:
        raise RuntimeError("REQUIRE_IDENTITY is set but FIREBASE_PROJECT_ID is not configured")
    sweeper = asyncio.create_task(coordinator.run_sweeper())
    yield
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    coordinator.shutdown()
    logger.info("Backend shutting down.")


app = FastAPI(
    title="Detective Online",
    version="0.1.0",
    description="Real-time coordination backend for a two-player murder-mystery interrogation game",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "detective-online", "version": "0.1.0"}


from routers.room_router import router as room_router
from routers.ws_router import router as ws_router

app.include_router(room_router, prefix="/api")
app.include_router(ws_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
