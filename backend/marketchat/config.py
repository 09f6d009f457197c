import os
import logging
import sys
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> List[str]:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


@dataclass(frozen=True)
class Settings:
    store_backend: str = "mongo"
    mongo_uri: str = "mongodb://localhost:27017/"
    mongo_db_name: str = "marketchat"
    database_url: str = "sqlite:///./marketchat.db"
    file_storage: str = "local"
    upload_dir: str = "uploads"
    public_base_url: str = ""
    jwt_secret: str = "dev-secret-change-me"
    ws_auth_required: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            store_backend=os.getenv("STORE_BACKEND", "mongo"),
            mongo_uri=os.getenv("MONGO_URI", "mongodb://localhost:27017/"),
            mongo_db_name=os.getenv("MONGO_DB_NAME", "marketchat"),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./marketchat.db"),
            file_storage=os.getenv("FILE_STORAGE", "local"),
            upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "").rstrip("/"),
            jwt_secret=os.getenv("JWT_SECRET") or "dev-secret-change-me",
            ws_auth_required=_env_bool("WS_AUTH_REQUIRED"),
            cors_origins=_env_list("CORS_ORIGINS", "*"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
