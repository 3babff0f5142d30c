from __future__ import annotations

from mentor_review.domain.models import Outcome, ResultCategory, Verdict


def has_submission_issue(verdict: Verdict) -> bool:
    return bool(verdict.submission_issue)


def classify(verdict: Verdict) -> ResultCategory:
    if verdict.outcome == Outcome.PASS:
        return ResultCategory.PASS
    if verdict.outcome == Outcome.FAIL:
        return ResultCategory.FAIL
    if has_submission_issue(verdict):
        return ResultCategory.REVIEW_WITH_ISSUE
    return ResultCategory.REVIEW_BLOCKED


def is_review_state(verdict: Verdict) -> bool:
    return verdict.outcome == Outcome.REVIEW


def can_copy_to_slack(verdict: Verdict) -> bool:
    """Review without a submission issue never leaves the tool."""
    return classify(verdict) != ResultCategory.REVIEW_BLOCKED
