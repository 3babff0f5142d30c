from __future__ import annotations

import logging

from mentor_review.adapters import DrafterFactory
from mentor_review.api import create_app
from mentor_review.config import load_settings
from mentor_review.db import Database, SqlTaskRepository
from mentor_review.observability import configure_observability
from mentor_review.repository import InMemoryTaskRepository
from mentor_review.service import ReviewService

_log = logging.getLogger(__name__)


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )

    try:
        db = Database(settings.database_url)
        db.create_schema()
        repo = SqlTaskRepository(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory repository')
        repo = InMemoryTaskRepository()

    drafter = DrafterFactory.create(settings)
    if not settings.dry_run and not settings.openai_api_key:
        _log.warning('OPENAI_API_KEY is not set; AI drafts will fail until it is configured')
    service = ReviewService(repository=repo, drafter=drafter)
    return create_app(service=service)


app = build_app()
