from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    output_dir: str
    portal_url: str | None
    headless: bool
    browser_channels: tuple[str, ...]
    max_login_retries: int
    retry_backoff_seconds: float
    captcha_max_attempts: int
    login_timeout_seconds: float
    step_timeout_ms: int
    result_wait_ms: int
    tesseract_cmd: str | None


def get_settings() -> Settings:
    channels = os.getenv("BROWSER_CHANNELS", "chrome,msedge,chromium")
    return Settings(
        app_name=os.getenv("APP_NAME", "credcheck"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./credcheck.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        portal_url=os.getenv("PORTAL_URL") or None,
        headless=_env_flag("HEADLESS", "true"),
        browser_channels=tuple(c.strip() for c in channels.split(",") if c.strip()),
        max_login_retries=int(os.getenv("MAX_LOGIN_RETRIES", "1")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "2")),
        captcha_max_attempts=int(os.getenv("CAPTCHA_MAX_ATTEMPTS", "5")),
        login_timeout_seconds=float(os.getenv("LOGIN_TIMEOUT_SECONDS", "120")),
        step_timeout_ms=int(os.getenv("STEP_TIMEOUT_MS", "10000")),
        result_wait_ms=int(os.getenv("RESULT_WAIT_MS", "5000")),
        tesseract_cmd=os.getenv("TESSERACT_CMD") or None,
    )
