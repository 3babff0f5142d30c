from __future__ import annotations

from dataclasses import dataclass
import os


@dataclass(frozen=True)
class Settings:
    database_url: str
    service_name: str
    otel_endpoint: str | None
    dry_run: bool
    openai_api_key: str | None
    openai_model: str
    openai_temperature: float
    ai_timeout_seconds: int
    ai_max_retries: int


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(name: str, default: float, *, minimum: float = 0.0, maximum: float = 2.0) -> float:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return min(maximum, max(minimum, value))


def load_settings() -> Settings:
    database_url = os.getenv(
        'MENTOR_REVIEW_DATABASE_URL',
        'sqlite+pysqlite:///./mentor-review.sqlite3',
    )
    service_name = os.getenv('MENTOR_REVIEW_SERVICE_NAME', 'mentor-review')
    otel_endpoint = os.getenv('MENTOR_REVIEW_OTEL_EXPORTER_OTLP_ENDPOINT')
    dry_run = os.getenv('MENTOR_REVIEW_DRY_RUN', '').strip().lower() in {'1', 'true', 'yes', 'on'}
    openai_api_key = (os.getenv('OPENAI_API_KEY', '') or '').strip() or None
    openai_model = str(os.getenv('MENTOR_REVIEW_OPENAI_MODEL', 'gpt-4o-mini') or 'gpt-4o-mini').strip()
    openai_temperature = _env_float('MENTOR_REVIEW_OPENAI_TEMPERATURE', 0.3)
    ai_timeout_seconds = _env_int('MENTOR_REVIEW_AI_TIMEOUT_SECONDS', 60, minimum=5)
    ai_max_retries = _env_int('MENTOR_REVIEW_AI_MAX_RETRIES', 2, minimum=0)
    return Settings(
        database_url=database_url,
        service_name=service_name,
        otel_endpoint=otel_endpoint,
        dry_run=dry_run,
        openai_api_key=openai_api_key,
        openai_model=openai_model or 'gpt-4o-mini',
        openai_temperature=openai_temperature,
        ai_timeout_seconds=ai_timeout_seconds,
        ai_max_retries=ai_max_retries,
    )
