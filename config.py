import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "jgconveniencia")

STORE_NAME = os.getenv("STORE_NAME", "JG Conveniência")

# comma-separated, "*" for development
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Change streams need a replica set; without one writes are echoed locally.
REALTIME_ENABLED = _flag("REALTIME_ENABLED", "false")

STRICT_STATUS_TRANSITIONS = _flag("STRICT_STATUS_TRANSITIONS", "false")

NEW_ORDER_ALERT_SECONDS = float(os.getenv("NEW_ORDER_ALERT_SECONDS", "10"))
STATUS_ALERT_SECONDS = float(os.getenv("STATUS_ALERT_SECONDS", "6"))
