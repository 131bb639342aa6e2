import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()  # loads .env for local dev


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    env: str = os.getenv("ENV", "local")
    service_name: str = os.getenv("SERVICE_NAME", "funnel-engine")
    database_url: str = os.getenv("DATABASE_URL", "")
    db_pool_min: int = int(os.getenv("DB_POOL_MIN", "1"))
    db_pool_max: int = int(os.getenv("DB_POOL_MAX", "10"))

    # Automation dispatch
    webhook_timeout_seconds: float = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))
    automation_max_hops: int = int(os.getenv("AUTOMATION_MAX_HOPS", "5"))
    automation_strict: bool = _env_bool("AUTOMATION_STRICT")

    # Intent classification (ai_analyze_and_move)
    anthropic_api_key: str = os.getenv("ANTHROPIC_API_KEY", "")
    intent_model: str = os.getenv("INTENT_MODEL", "claude-3-5-haiku-latest")

    # Public origin for send_form_link URLs
    form_base_url: str = os.getenv("FORM_BASE_URL", "http://localhost:8000")

settings = Settings()
