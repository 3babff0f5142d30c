from mentor_review.domain.classifier import can_copy_to_slack, classify, is_review_state
from mentor_review.domain.events import EventType, normalize_event_type
from mentor_review.domain.gate import GateOutcome, can_finalize, evaluate_finalize_gate
from mentor_review.domain.models import Outcome, ResultCategory, SourceType, TaskStatus, Verdict, can_transition
from mentor_review.domain.slack_template import format_points, render

__all__ = [
    'EventType',
    'GateOutcome',
    'Outcome',
    'ResultCategory',
    'SourceType',
    'TaskStatus',
    'Verdict',
    'can_copy_to_slack',
    'can_finalize',
    'can_transition',
    'classify',
    'evaluate_finalize_gate',
    'format_points',
    'is_review_state',
    'normalize_event_type',
    'render',
]
