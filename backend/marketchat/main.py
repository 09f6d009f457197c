from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from .chat import ChatService
from .config import Settings, configure_logging
from .db import connect_mongo, create_indexes, create_tables, make_engine
from .messages import router as messages_router
from .realtime import BestEffortDelivery, ConnectionRegistry, router as ws_router
from .storage import LocalFileStorage, make_file_storage
from .store import MongoRowStore, SqlRowStore

logger = logging.getLogger(__name__)


def _make_store(settings: Settings):
    if settings.store_backend == "sql":
        engine = make_engine(settings.database_url)
        create_tables(engine)
        return SqlRowStore(engine), None
    if settings.store_backend == "mongo":
        db = connect_mongo(settings.mongo_uri, settings.mongo_db_name)
        return MongoRowStore(db), db
    raise ValueError(f"unknown STORE_BACKEND {settings.store_backend!r}")


def create_app(settings: Settings = None, store=None, file_storage=None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    db = None
    if store is None:
        store, db = _make_store(settings)
    if file_storage is None:
        file_storage = make_file_storage(settings, db)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if db is not None:
            try:
                create_indexes(db)
            except Exception as e:
                logger.error("could not create MongoDB indexes: %s", e)
        yield

    app = FastAPI(title="Marketplace Chat", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    registry = ConnectionRegistry()
    delivery = BestEffortDelivery(registry)
    app.state.settings = settings
    app.state.store = store
    app.state.files = file_storage
    app.state.registry = registry
    app.state.chat = ChatService(store, registry, delivery, file_storage, settings)

    @app.get("/health")
    def health():
        return {"ok": True, "online": len(registry.online_users())}

    app.include_router(messages_router)
    app.include_router(ws_router)
    if isinstance(file_storage, LocalFileStorage):
        app.mount(
            "/uploads", StaticFiles(directory=str(file_storage.root), check_dir=False), name="uploads"
        )
    return app
