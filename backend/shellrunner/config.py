from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import AliasChoices, Field
from pathlib import Path

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="APP_", env_file_encoding="utf-8", extra="ignore", populate_by_name=True)

    # audit trail
    AUDIT_DB_PATH: Path | str = Path("./data/audit.db")
    DEFAULT_AUDIT_LIMIT: int = 50
    MAX_AUDIT_LIMIT: int = 1000

    # queue broker (optional: absence means inline execution only)
    QUEUE_URL: str | None = None
    REDIS_URL: str | None = Field(default=None, validation_alias=AliasChoices("APP_REDIS_URL", "REDIS_URL"))
    REDIS_HOST: str | None = Field(default=None, validation_alias=AliasChoices("APP_REDIS_HOST", "REDIS_HOST"))
    REDIS_PORT: int = Field(default=6379, validation_alias=AliasChoices("APP_REDIS_PORT", "REDIS_PORT"))
    QUEUE_NAME: str = "exchange-jobs"
    QUEUE_PROBE_TIMEOUT_SECONDS: float = 3.0
    WORKER_POLL_SECONDS: float = 1.0

    # remote shell session
    SHELL_EXECUTABLE: str = "pwsh"
    SHELL_ARGS: list[str] | str = ["-NoLogo", "-NoProfile", "-NonInteractive", "-Command", "-"]
    SESSION_INIT_SCRIPT: str = Field(
        default="",
        description="Template run once per session, e.g. Connect-ExchangeOnline -AppId '{app_id}' ...",
    )
    SESSION_CONNECT_RETRIES: int = 3
    SESSION_RETRY_DELAY_SECONDS: float = 2.0
    COMMAND_TIMEOUT_SECONDS: float = 600.0
    LIVE_OUTPUT_MAX_CHARS: int = 65536

    # service identity used when the caller brings no credentials (worker jobs)
    EXCHANGE_APP_ID: str = ""
    EXCHANGE_TENANT_ID: str = ""
    EXCHANGE_CERT_THUMB: str = ""
    EXCHANGE_ORGANIZATION: str = ""

    # server
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    LOG_DIR: Path | None = None
    LOG_LEVEL: str = "INFO"

    @property
    def queue_url(self) -> str | None:
        """Broker URL in order of precedence: APP_QUEUE_URL, REDIS_URL, REDIS_HOST/PORT."""
        if self.QUEUE_URL:
            return self.QUEUE_URL
        if self.REDIS_URL:
            return self.REDIS_URL
        if self.REDIS_HOST:
            return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"
        return None


def normalize(s: Settings) -> Settings:
    """Normalize values coming from env."""
    if isinstance(s.SHELL_ARGS, str):
        s.SHELL_ARGS = [p for p in s.SHELL_ARGS.split() if p]
    if isinstance(s.AUDIT_DB_PATH, str) and s.AUDIT_DB_PATH != ":memory:":
        s.AUDIT_DB_PATH = Path(s.AUDIT_DB_PATH)
    if isinstance(s.AUDIT_DB_PATH, Path):
        s.AUDIT_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    s.LOG_LEVEL = s.LOG_LEVEL.upper()
    return s

settings = normalize(Settings())
