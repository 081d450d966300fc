import os

from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./proctorexam.db")
SCHEMA_SEARCH_PATH = os.getenv("SCHEMA_SEARCH_PATH")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("1", "true", "yes")

# Auth
SECRET = os.getenv("SECRET", "dev-secret-change-me")
JWT_LIFETIME_SECONDS = int(os.getenv("JWT_LIFETIME_SECONDS", "86400"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# include the exact origins used by the frontend dev server (no trailing slash)
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000,http://127.0.0.1:3000",
    ).split(",")
    if o.strip()
]

# Violation thresholds used as defaults for new exams
MAX_VIOLATIONS_WARNING = int(os.getenv("MAX_VIOLATIONS_WARNING", "3"))
MAX_VIOLATIONS_SUBMIT = int(os.getenv("MAX_VIOLATIONS_SUBMIT", "5"))

# Batching
DEFAULT_BATCH_SIZE = int(os.getenv("DEFAULT_BATCH_SIZE", "500"))
DEFAULT_BATCH_BUFFER_MINUTES = int(os.getenv("DEFAULT_BATCH_BUFFER_MINUTES", "15"))

# Periodic expiry / batch reconciliation, 0 disables the background task
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "0"))
