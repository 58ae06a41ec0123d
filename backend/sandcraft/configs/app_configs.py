import os
import urllib.parse

#####
# App Configs
#####
APP_HOST = "0.0.0.0"
APP_PORT = int(os.environ.get("APP_PORT") or "8080")
# API prefix for all routes, useful when running behind a reverse proxy
APP_API_PREFIX = os.environ.get("API_PREFIX", "")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "notice")

# Development bypass for the upstream session layer. When enabled every
# request is treated as coming from DEV_USER_ID.
AUTH_DISABLED = os.environ.get("AUTH_DISABLED", "").lower() == "true"
DEV_USER_ID = os.environ.get("DEV_USER_ID", "00000000-0000-0000-0000-000000000001")

# Header the upstream session layer uses to pass the authenticated user id
AUTH_USER_ID_HEADER = os.environ.get("AUTH_USER_ID_HEADER", "X-User-Id")


#####
# Postgres Configs
#####
POSTGRES_USER = os.environ.get("POSTGRES_USER") or "postgres"
# URL-encode the password for asyncpg to avoid issues with special characters
POSTGRES_PASSWORD = urllib.parse.quote_plus(
    os.environ.get("POSTGRES_PASSWORD") or "password"
)
POSTGRES_HOST = os.environ.get("POSTGRES_HOST") or "localhost"
POSTGRES_PORT = os.environ.get("POSTGRES_PORT") or "5432"
POSTGRES_DB = os.environ.get("POSTGRES_DB") or "postgres"

# Full override, e.g. sqlite+aiosqlite:///./sandcraft.db for local hacking
DATABASE_URL = os.environ.get("DATABASE_URL") or (
    f"postgresql+asyncpg://{POSTGRES_USER}:{POSTGRES_PASSWORD}"
    f"@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}"
)

DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE") or "20")
DB_MAX_OVERFLOW = int(os.environ.get("DB_MAX_OVERFLOW") or "10")
DB_ECHO = os.environ.get("DB_ECHO", "").lower() == "true"
