"""Infrastructure configuration - single source of truth for env vars."""

import os

# Database (async SQLAlchemy URL; postgres:// URLs are rewritten in graphflow_api.database)
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./graphflow.db")
DB_ECHO = os.getenv("DB_ECHO", "false").lower() == "true"

# Server binding - used by entrypoint / uvicorn
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))

# CORS - comma-separated origins
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if o.strip()
]

# Agent platform - where sessions and work tasks are created
PLATFORM_API_URL = os.getenv("PLATFORM_API_URL", "http://localhost:3000")
PLATFORM_API_TOKEN = os.getenv("PLATFORM_API_TOKEN", "")

# Resume persisted runs on startup
RECOVER_ON_STARTUP = os.getenv("RECOVER_ON_STARTUP", "true").lower() in ("true", "1", "yes")
