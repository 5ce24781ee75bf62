import re

from apscheduler.triggers.cron import CronTrigger
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings


# cron numbers weekdays from Sunday (0 and 7); APScheduler 3.x starts at Monday
_CRON_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")
_NUMERIC_WEEKDAY = re.compile(r"^(?:(\*)|(\d+)(?:-(\d+))?)(?:/(\d+))?$")


def _weekday_names(field: str) -> str:
    """Rewrite numeric day-of-week terms as explicit day names."""
    parts = []
    for term in field.split(","):
        match = _NUMERIC_WEEKDAY.match(term)
        if match is None or term == "*":
            parts.append(term)
            continue

        star, first, last, step = match.groups()
        if star:
            low, high = 0, 6
        else:
            low = int(first)
            high = int(last) if last is not None else (6 if step else low)
        step = int(step) if step is not None else 1
        if high > 7 or low > high or step < 1:
            raise ValueError(f"invalid day-of-week term {term!r}")

        parts.extend(dict.fromkeys(_CRON_WEEKDAYS[day] for day in range(low, high + 1, step)))
    return ",".join(dict.fromkeys(parts))


def cron_trigger(expr: str) -> CronTrigger:
    """Build a UTC CronTrigger from a standard 5-field cron expression."""
    fields = expr.split()
    if len(fields) != 5:
        raise ValueError(f"cron_expr must have 5 fields, got {expr!r}")
    fields[4] = _weekday_names(fields[4])
    return CronTrigger.from_crontab(" ".join(fields), timezone="UTC")


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # App
    app_env: str = Field(default="development")
    log_level: str = Field(default="info")

    # Storage
    db_path: str = Field(default="collector.db")

    # Schedule (standard 5-field cron)
    cron_expr: str = Field(default="0 */6 * * *")
    source_timeout_seconds: float = Field(default=300.0, gt=0)
    stop_timeout_seconds: float = Field(default=30.0, gt=0)

    # Global comment depth ceiling (0 disables comments)
    max_comment_depth: int = Field(default=5, ge=0)

    # Inter-request delay per source type (milliseconds)
    reddit_delay_ms: int = Field(default=2000, ge=0)
    hackernews_delay_ms: int = Field(default=500, ge=0)
    semantic_scholar_delay_ms: int = Field(default=1000, ge=0)
    rate_limit_burst: int = Field(default=10, ge=1)

    # Outbound HTTP
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    http_max_attempts: int = Field(default=3, ge=1)
    http_backoff_seconds: float = Field(default=1.0, ge=0)
    http_user_agent: str = Field(default="collector/1.0")

    # Credentials
    reddit_client_id: SecretStr = Field(default=SecretStr(""))
    reddit_client_secret: SecretStr = Field(default=SecretStr(""))
    reddit_username: SecretStr = Field(default=SecretStr(""))
    reddit_password: SecretStr = Field(default=SecretStr(""))
    semantic_scholar_api_key: SecretStr = Field(default=SecretStr(""))

    @field_validator("cron_expr")
    @classmethod
    def _check_cron_expr(cls, value: str) -> str:
        cron_trigger(value)
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        if value.lower() not in {"debug", "info", "warn", "warning", "error"}:
            raise ValueError(f"log_level must be one of debug, info, warn, error; got {value!r}")
        return value.lower()

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    def delay_ms_for(self, source_type: str) -> int:
        return {
            "reddit": self.reddit_delay_ms,
            "hackernews": self.hackernews_delay_ms,
            "semantic_scholar": self.semantic_scholar_delay_ms,
        }[source_type]


settings = Settings()
