import os
from dataclasses import dataclass
from typing import Mapping

from errors import ConfigurationError


def _flag(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Every environment-derived value the service needs, read once at startup."""

    supabase_url: str = ""
    supabase_service_key: str = ""
    browserless_api_key: str = ""
    browserless_api_url: str = "https://production-sfo.browserless.io"
    browser_provider: str = "browserless"
    headless: bool = True
    local_environment_url: str = "http://localhost:3000"
    screenshot_bucket: str = "test-screenshots"
    s3_endpoint_url: str | None = None
    s3_region: str = "us-east-1"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    screenshot_public_url: str | None = None
    case_delay_seconds: float = 1.0
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        try:
            case_delay = float(env.get("CASE_DELAY_SECONDS", "1"))
            port = int(env.get("PORT", "8000"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}")
        return cls(
            supabase_url=env.get("SUPABASE_URL", "").rstrip("/"),
            supabase_service_key=env.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            browserless_api_key=env.get("BROWSERLESS_API_KEY", ""),
            browserless_api_url=env.get("BROWSERLESS_API_URL", cls.browserless_api_url).rstrip("/"),
            browser_provider=env.get("BROWSER_PROVIDER", "browserless").lower(),
            headless=_flag(env.get("HEADLESS"), True),
            local_environment_url=env.get("LOCAL_ENVIRONMENT_URL", cls.local_environment_url),
            screenshot_bucket=env.get("SCREENSHOT_BUCKET", cls.screenshot_bucket),
            s3_endpoint_url=env.get("S3_ENDPOINT_URL") or None,
            s3_region=env.get("S3_REGION", cls.s3_region),
            s3_access_key_id=env.get("S3_ACCESS_KEY_ID") or None,
            s3_secret_access_key=env.get("S3_SECRET_ACCESS_KEY") or None,
            screenshot_public_url=env.get("SCREENSHOT_PUBLIC_URL") or None,
            case_delay_seconds=case_delay,
            host=env.get("HOST", cls.host),
            port=port,
            log_level=env.get("LOG_LEVEL", cls.log_level).upper(),
        )

    def require_server_config(self) -> None:
        missing = []
        if not self.supabase_url:
            missing.append("SUPABASE_URL")
        if not self.supabase_service_key:
            missing.append("SUPABASE_SERVICE_ROLE_KEY")
        if self.browser_provider == "browserless" and not self.browserless_api_key:
            missing.append("BROWSERLESS_API_KEY")
        if missing:
            raise ConfigurationError(f"Server configuration error: missing {', '.join(missing)}")
