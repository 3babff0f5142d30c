from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Outcome(str, Enum):
    PASS = 'Pass'
    FAIL = 'Fail'
    REVIEW = 'Review'


class ResultCategory(str, Enum):
    PASS = 'pass'
    FAIL = 'fail'
    REVIEW_WITH_ISSUE = 'review_with_issue'
    REVIEW_BLOCKED = 'review_blocked'


class TaskStatus(str, Enum):
    DRAFT = 'draft'
    REVIEWED = 'reviewed'
    FINALIZED = 'finalized'


class SourceType(str, Enum):
    COLAB = 'colab'
    DOCS = 'docs'
    TEXT = 'text'
    OTHER = 'other'


_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.DRAFT: frozenset({TaskStatus.REVIEWED}),
    TaskStatus.REVIEWED: frozenset({TaskStatus.FINALIZED}),
    TaskStatus.FINALIZED: frozenset(),
}


def can_transition(current: TaskStatus | str, target: TaskStatus | str) -> bool:
    """Forward-only status edges: draft -> reviewed -> finalized."""
    try:
        current_status = TaskStatus(current)
        target_status = TaskStatus(target)
    except ValueError:
        return False
    return target_status in _ALLOWED_TRANSITIONS[current_status]


@dataclass(frozen=True)
class Verdict:
    outcome: Outcome
    task_name: str = ''
    good_points: tuple[str, ...] = field(default_factory=tuple)
    improvements: tuple[str, ...] = field(default_factory=tuple)
    fail_reasons: tuple[str, ...] = field(default_factory=tuple)
    submission_issue: str | None = None
    confidence_note: str | None = None

    def advisory_violations(self) -> list[str]:
        # Pass => no fail reasons, Fail => no improvements. Reported, never enforced.
        out: list[str] = []
        if self.outcome == Outcome.PASS and self.fail_reasons:
            out.append('pass_with_fail_reasons')
        if self.outcome == Outcome.FAIL and self.improvements:
            out.append('fail_with_improvements')
        return out

    def to_payload(self) -> dict:
        return {
            'result': self.outcome.value,
            'task_name': self.task_name,
            'good_points': list(self.good_points),
            'improvements': list(self.improvements),
            'fail_reasons': list(self.fail_reasons),
            'submission_issue': self.submission_issue,
            'confidence_note': self.confidence_note,
        }
