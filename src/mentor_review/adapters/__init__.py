from __future__ import annotations

from mentor_review.adapters.base import Drafter, DraftingError, DraftRequest, DraftResult
from mentor_review.adapters.dry_run import DryRunDrafter
from mentor_review.adapters.factory import DrafterFactory
from mentor_review.adapters.openai_drafter import OpenAIDrafter

__all__ = [
    'Drafter',
    'DrafterFactory',
    'DraftingError',
    'DraftRequest',
    'DraftResult',
    'DryRunDrafter',
    'OpenAIDrafter',
]
