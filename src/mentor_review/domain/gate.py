from __future__ import annotations

from dataclasses import dataclass

from mentor_review.domain.classifier import classify
from mentor_review.domain.models import ResultCategory, TaskStatus, Verdict


@dataclass(frozen=True)
class GateOutcome:
    passed: bool
    reason: str


def can_finalize(verdict: Verdict) -> bool:
    """A task may never be finalized while its verdict is an unresolved Review."""
    return classify(verdict) != ResultCategory.REVIEW_BLOCKED


def evaluate_finalize_gate(*, status: TaskStatus | str, verdict: Verdict | None) -> GateOutcome:
    current = TaskStatus(status)
    if current == TaskStatus.FINALIZED:
        return GateOutcome(passed=False, reason='already_finalized')
    if current != TaskStatus.REVIEWED:
        return GateOutcome(passed=False, reason='not_reviewed')
    if verdict is None:
        return GateOutcome(passed=False, reason='verdict_missing')
    if not can_finalize(verdict):
        return GateOutcome(passed=False, reason='review_unresolved')
    return GateOutcome(passed=True, reason='passed')
