import os

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+psycopg://coursecast:coursecast@db:5432/coursecast")
SESSION_TTL_MINUTES = int(os.getenv("SESSION_TTL_MINUTES", "480"))
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "coursecast_session")
CSRF_HEADER_NAME = "X-CSRF-Token"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEFAULT_PAGE_LIMIT = int(os.getenv("DEFAULT_PAGE_LIMIT", "10"))
RESET_PASSWORD_BYTES = int(os.getenv("RESET_PASSWORD_BYTES", "9"))
MIN_PASSWORD_LENGTH = int(os.getenv("MIN_PASSWORD_LENGTH", "6"))
METRICS_ENABLED = os.getenv("METRICS_ENABLED", "1").lower() in {"1", "true", "yes"}
