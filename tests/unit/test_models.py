from __future__ import annotations

from mentor_review.domain.events import EventType, normalize_event_type
from mentor_review.domain.models import Outcome, Verdict

import pytest


def test_verdict_to_payload_uses_wire_keys():
    verdict = Verdict(
        outcome=Outcome.FAIL,
        task_name='9-6',
        good_points=('a',),
        fail_reasons=('b',),
        submission_issue=None,
        confidence_note='note',
    )
    assert verdict.to_payload() == {
        'result': 'Fail',
        'task_name': '9-6',
        'good_points': ['a'],
        'improvements': [],
        'fail_reasons': ['b'],
        'submission_issue': None,
        'confidence_note': 'note',
    }


def test_advisory_violations_reports_both_rules():
    assert Verdict(outcome=Outcome.PASS, fail_reasons=('x',)).advisory_violations() == ['pass_with_fail_reasons']
    assert Verdict(outcome=Outcome.FAIL, improvements=('x',)).advisory_violations() == ['fail_with_improvements']
    assert Verdict(outcome=Outcome.REVIEW, improvements=('x',), fail_reasons=('y',)).advisory_violations() == []


def test_normalize_event_type_accepts_enum_and_text():
    assert normalize_event_type(EventType.FINALIZED) == 'finalized'
    assert normalize_event_type('  Draft_Failed ') == 'draft_failed'
    with pytest.raises(ValueError):
        normalize_event_type('  ')
