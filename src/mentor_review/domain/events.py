from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    DRAFT_FAILED = 'draft_failed'
    DRAFT_GENERATED = 'draft_generated'
    DRAFT_STARTED = 'draft_started'
    FINALIZE_REJECTED = 'finalize_rejected'
    FINALIZED = 'finalized'
    TASK_CREATED = 'task_created'
    VERDICT_UPDATED = 'verdict_updated'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text
