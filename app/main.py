"""Main FastAPI application."""
from fastapi import FastAPI
from contextlib import asynccontextmanager

from app.core.logging import setup_logging
from app.db.database import init_db
from app.api import health, conversations
from app.api.webhooks import voice, media_stream


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    await init_db()
    yield


app = FastAPI(
    title="Clinical Intake Voice Agent",
    description="Phone-based clinical intake bridged to a realtime speech model",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router, tags=["health"])
app.include_router(voice.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(media_stream.router, tags=["media-stream"])
app.include_router(conversations.router, tags=["conversations"])


@app.get("/")
async def root():
    """Service banner."""
    return {
        "message": "Clinical Intake Voice Agent is running",
        "version": "0.1.0",
    }


if __name__ == "__main__":
    import uvicorn
    from app.core.config import settings

    uvicorn.run("app.main:app", host=settings.host, port=settings.port)
