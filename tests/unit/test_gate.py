from __future__ import annotations

import pytest

from mentor_review.domain.gate import GateOutcome, can_finalize, evaluate_finalize_gate
from mentor_review.domain.models import Outcome, TaskStatus, Verdict, can_transition


def test_can_finalize_false_only_for_review_without_issue():
    assert can_finalize(Verdict(outcome=Outcome.PASS)) is True
    assert can_finalize(Verdict(outcome=Outcome.FAIL)) is True
    assert can_finalize(Verdict(outcome=Outcome.REVIEW, submission_issue='提出物が空です')) is True
    assert can_finalize(Verdict(outcome=Outcome.REVIEW)) is False


def test_gate_passes_reviewed_task_with_resolved_verdict():
    outcome = evaluate_finalize_gate(status='reviewed', verdict=Verdict(outcome=Outcome.PASS))
    assert outcome == GateOutcome(passed=True, reason='passed')


@pytest.mark.parametrize(
    ('status', 'verdict', 'reason'),
    [
        (TaskStatus.FINALIZED, Verdict(outcome=Outcome.PASS), 'already_finalized'),
        (TaskStatus.DRAFT, Verdict(outcome=Outcome.PASS), 'not_reviewed'),
        (TaskStatus.REVIEWED, None, 'verdict_missing'),
        (TaskStatus.REVIEWED, Verdict(outcome=Outcome.REVIEW), 'review_unresolved'),
    ],
)
def test_gate_rejection_reasons(status, verdict, reason):
    outcome = evaluate_finalize_gate(status=status, verdict=verdict)
    assert outcome.passed is False
    assert outcome.reason == reason


def test_gate_checks_finalized_before_verdict():
    outcome = evaluate_finalize_gate(status='finalized', verdict=Verdict(outcome=Outcome.REVIEW))
    assert outcome.reason == 'already_finalized'


def test_status_machine_is_forward_only():
    assert can_transition('draft', 'reviewed') is True
    assert can_transition('reviewed', 'finalized') is True
    assert can_transition('draft', 'finalized') is False
    assert can_transition('reviewed', 'draft') is False
    assert can_transition('finalized', 'reviewed') is False
    assert can_transition('finalized', 'finalized') is False
    assert can_transition('draft', 'draft') is False


def test_status_machine_rejects_unknown_values():
    assert can_transition('draft', 'archived') is False
    assert can_transition('unknown', 'reviewed') is False
