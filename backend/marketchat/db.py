import logging

from pymongo import MongoClient, ASCENDING
from pymongo.database import Database
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

logger = logging.getLogger(__name__)


def connect_mongo(uri: str, db_name: str) -> Database:
    client = MongoClient(uri)
    try:
        client.admin.command("ping")
        logger.info("MongoDB connection established")
    except Exception as e:
        # The client reconnects lazily; writes will surface as PersistenceError.
        logger.error("MongoDB ping failed: %s", e)
    return client[db_name]


def create_indexes(db: Database):
    db.messages.create_index([("sender_id", ASCENDING), ("receiver_id", ASCENDING)])
    db.messages.create_index("conversation_id")
    db.messages.create_index("created_at")
    db.conversations.create_index(
        "direct_key", unique=True, partialFilterExpression={"is_group": False}
    )
    db.conversation_members.create_index("conversation_id")
    db.conversation_members.create_index("user_id")
    logger.info("MongoDB indexes checked/created")


def make_engine(url: str):
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def create_tables(engine):
    SQLModel.metadata.create_all(engine)
