import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from relay.config import Settings, settings as default_settings
from relay.routers import relay as relay_router
from relay.services.llm import SharedBackend, TokenSource, build_token_source
from relay.services.recorder import TurnRecorder, TurnStore
from relay.storage.database import Database

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    store: TurnStore | None = None,
    source: TokenSource | None = None,
) -> FastAPI:
    """build the app; `store` and `source` replace the database and backend when given"""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = None
        turn_store = store
        if turn_store is None:
            database = turn_store = await Database.connect(
                settings.database_url, settings.database_schema,
            )
        backend = SharedBackend(source or build_token_source(settings), slots=settings.backend_slots)

        app.state.settings = settings
        app.state.backend = backend
        app.state.recorder = TurnRecorder(turn_store, timeout=settings.record_timeout)
        logger.info("ready (backend=%s, structured=%s)", backend.name, settings.structured_output)
        yield
        await backend.close()
        if database is not None:
            await database.close()

    app = FastAPI(
        title="Relay",
        description="streaming conversational relay",
        lifespan=lifespan,
    )

    app.include_router(relay_router.router)

    @app.get("/api/health")
    async def health(request: Request):
        state = request.app.state
        return {
            "status": "ok",
            "backend": state.backend.name,
            "structured_output": state.settings.structured_output,
        }

    return app


app = create_app()
