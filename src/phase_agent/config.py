# config.py
# Runtime settings. Values come from the environment (a local .env is loaded
# first) and fall back to the defaults below.

import os

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _env(name: str, default: str) -> str:
    return os.getenv(f"PHASE_AGENT_{name}", default)


class Settings(BaseModel):
    # Completion endpoint
    api_base_url: str = _env("API_BASE_URL", "https://ahamai-api.officialprakashkrsingh.workers.dev/v1")
    api_key: str = _env("API_KEY", "")
    default_model: str = _env("MODEL", "gpt-4o-mini")

    # Tool behaviour
    probe_timeout_seconds: float = float(_env("PROBE_TIMEOUT_SECONDS", "10"))
    screenshot_max_attempts: int = int(_env("SCREENSHOT_MAX_ATTEMPTS", "3"))
    screenshot_retry_delay: float = float(_env("SCREENSHOT_RETRY_DELAY", "2.0"))
    multi_screenshot_delay: float = float(_env("MULTI_SCREENSHOT_DELAY", "1.0"))

    # Cosmetic pauses between progress log entries
    pacing_enabled: bool = _env("PACING", "1").lower() not in ("0", "false", "no")

    log_level: str = _env("LOG_LEVEL", "WARNING")


settings = Settings()
