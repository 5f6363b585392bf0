import logging
import os
from logging.handlers import RotatingFileHandler
from typing import List

from dotenv import load_dotenv

# Load environment variables from this file's directory so running uvicorn from repo root still works
ENV_PATH = os.path.join(os.path.dirname(__file__), ".env")
load_dotenv(dotenv_path=ENV_PATH)

DEFAULT_SECRET = "dev-secret-change-this-in-production"


class Config:
    """Runtime settings read from the environment"""

    APP_ENV = os.getenv("APP_ENV", "development").lower()  # development | production

    # Storage
    DB_TYPE = os.getenv("DB_TYPE", "file").lower()  # "file" or "mongodb"
    DATA_DIR = os.getenv("DATA_DIR", "data")
    MONGO_URI = os.getenv("MONGO_URI")
    MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "attendance_db")

    # Auth
    SECRET_KEY = os.getenv("SECRET_KEY") or os.getenv("JWT_SECRET") or DEFAULT_SECRET
    ALGORITHM = "HS256"
    ACCESS_TOKEN_EXPIRE_HOURS = int(os.getenv("ACCESS_TOKEN_EXPIRE_HOURS", "8"))

    # HTTP
    PORT = int(os.getenv("PORT", "4000"))
    REQUEST_TIMEOUT_SECONDS = int(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "").strip()

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FILE = os.getenv("LOG_FILE")

    @classmethod
    def cors_origins(cls) -> List[str]:
        return [o.strip() for o in cls.CORS_ORIGINS.split(",") if o.strip()]

    @classmethod
    def validate(cls):
        """Refuse to start with settings that are only acceptable in development"""
        if cls.APP_ENV != "development" and cls.SECRET_KEY == DEFAULT_SECRET:
            raise ValueError("SECRET_KEY must be set in production")
        if cls.DB_TYPE not in ("file", "mongodb"):
            raise ValueError(f"Unsupported DB_TYPE: {cls.DB_TYPE}")
        if cls.DB_TYPE == "mongodb" and not cls.MONGO_URI:
            raise ValueError("MONGO_URI environment variable not set")


def configure_logging():
    """Console logging always, plus a rotating file when LOG_FILE is set"""
    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    handlers: List[logging.Handler] = []

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if Config.LOG_FILE:
        file_handler = RotatingFileHandler(
            Config.LOG_FILE,
            maxBytes=10 * 1024 * 1024,  # 10 MB per file
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=Config.LOG_LEVEL, handlers=handlers)

    # pymongo is chatty at INFO
    logging.getLogger("pymongo").setLevel(logging.WARNING)
