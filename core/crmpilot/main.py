"""CRM Pilot - FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from crmpilot import __version__
from crmpilot.api import orchestrator_store
from crmpilot.api.routes import chat, stats
from crmpilot.api.schemas import HealthResponse
from crmpilot.config import API_PREFIX, HOST, PORT
from crmpilot.utils.logging import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(f"CRM Pilot v{__version__} starting...")
    logger.info(f"Server running at http://{HOST}:{PORT}")
    yield
    await orchestrator_store.shutdown()
    logger.info("CRM Pilot stopped")


app = FastAPI(
    title="CRM Pilot",
    description="Conversational intent resolution for CRM assistants",
    version=__version__,
    lifespan=lifespan,
)

# Configure CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routes
app.include_router(chat.router, prefix=API_PREFIX)
app.include_router(stats.router, prefix=API_PREFIX)


@app.get(f"{API_PREFIX}/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    local = orchestrator_store.local_model
    return HealthResponse(
        status="ok",
        version=__version__,
        model_loaded=bool(local and local.is_running()),
    )


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    run()
