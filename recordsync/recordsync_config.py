# recordsync/config.py - Engine configuration

import os
from typing import List

class Settings:
    # Record identity and concurrency defaults
    DEFAULT_ENTITY_TYPE: str = os.getenv("DEFAULT_ENTITY_TYPE", "Record")
    DEFAULT_KEY_FIELD: str = os.getenv("DEFAULT_KEY_FIELD", "id")
    DEFAULT_VERSION_FIELD: str = os.getenv("DEFAULT_VERSION_FIELD", "version")
    TEMP_ID_PREFIX: str = os.getenv("TEMP_ID_PREFIX", "tmp-")

    # Paging
    DEFAULT_PAGE_LIMIT: int = int(os.getenv("DEFAULT_PAGE_LIMIT", "20"))

    # REST adapter
    HTTP_TIMEOUT: float = float(os.getenv("HTTP_TIMEOUT", "10.0"))

    # Database
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL",
        "sqlite:///./recordsync.db"
    )

    # CORS
    CORS_ORIGINS: List[str] = os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://localhost:8080"
    ).split(",")

    # Debug mode
    DEBUG: bool = os.getenv("DEBUG", "true").lower() == "true"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8000"))

settings = Settings()
