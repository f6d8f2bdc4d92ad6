import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from diagram_gen.config import settings
from diagram_gen.database import init_db
from diagram_gen.dependencies import build_services
from diagram_gen.routes import pipeline, recording, units

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create SQLite tables and wire the services on startup.  Nothing to
    tear down on shutdown (recording streams are closed by their routes)."""
    await init_db(settings.db_path)
    app.state.services = build_services(settings)
    logger.info("diagram-gen ready (recognizer=%s, db=%s)", settings.recognizer_backend, settings.db_path)
    yield


app = FastAPI(
    title="diagram-gen",
    description="Turn notes, images and recorded speech into Mermaid diagrams with Groq",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(units.router)
app.include_router(pipeline.router)
app.include_router(recording.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
