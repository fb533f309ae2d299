from pathlib import Path
import sys

# Ensure backend directory is on sys.path so `shopassist.*` imports work no matter where main is executed
BACKEND_ROOT = Path(__file__).resolve().parent
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from shopassist.api.routes.chat import router as chat_router
from shopassist.api.routes.health import router as health_router
from shopassist.core.config import settings
from shopassist.core.logging import configure_logging, get_logger
from shopassist.db.session import engine
from shopassist.services.embedding import EmbeddingService
from shopassist.services.llm_service import LLMService, build_openai_client

configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: ensure required extensions exist
    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))

    # One provider client per process; services receive it explicitly.
    client = build_openai_client(settings)
    app.state.llm_service = LLMService(client, settings)
    app.state.embedding_service = EmbeddingService(client, settings)
    logger.info(f"{settings.PROJECT_NAME} started (model={settings.OPENAI_MODEL}, env={settings.ENVIRONMENT})")
    yield
    # Shutdown
    await client.close()
    await engine.dispose()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include routers with proper prefixes
app.include_router(health_router, tags=["Health"])
app.include_router(chat_router, prefix=f"{settings.API_V1_STR}/chat", tags=["Chat"])
