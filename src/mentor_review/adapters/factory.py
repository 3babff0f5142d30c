from __future__ import annotations

from mentor_review.adapters.base import Drafter
from mentor_review.adapters.dry_run import DryRunDrafter
from mentor_review.adapters.openai_drafter import OpenAIDrafter
from mentor_review.config import Settings


class DrafterFactory:
    @classmethod
    def create(cls, settings: Settings) -> Drafter:
        if settings.dry_run:
            return DryRunDrafter()
        return OpenAIDrafter(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            temperature=settings.openai_temperature,
            timeout_seconds=settings.ai_timeout_seconds,
            max_retries=settings.ai_max_retries,
        )


__all__ = ['DrafterFactory']
