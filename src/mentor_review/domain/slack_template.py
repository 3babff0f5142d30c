from __future__ import annotations

from mentor_review.domain.classifier import classify
from mentor_review.domain.models import ResultCategory, Verdict

EMPTY_POINTS_LINE = '・特になし'
BULLET_PREFIX = '・'
MENTION_LINE = '@受講生'


def format_points(points: list[str] | tuple[str, ...]) -> str:
    if not points:
        return EMPTY_POINTS_LINE
    return '\n'.join(f'{BULLET_PREFIX}{point}' for point in points)


def build_pass_message(verdict: Verdict) -> str:
    good_points = format_points(verdict.good_points)
    improvements = format_points(verdict.improvements)
    return (
        f'{MENTION_LINE}\n'
        '\n'
        '課題のご提出ありがとうございます！\n'
        '採点の結果、「合格」となりました！おめでとうございます🎉\n'
        '\n'
        '*[課題名]*\n'
        f'{verdict.task_name}\n'
        '\n'
        '*[具体的なフィードバック]*\n'
        '\n'
        '■良かった点\n'
        f'{good_points}\n'
        '\n'
        '■改善点\n'
        f'{improvements}\n'
        '\n'
        '以上です！\n'
        '今回の課題で学んだ内容を活かし、次の課題も頑張ってください！💪'
    )


def build_fail_message(verdict: Verdict) -> str:
    fail_reasons = format_points(verdict.fail_reasons)
    good_points = format_points(verdict.good_points)
    return (
        f'{MENTION_LINE}\n'
        '\n'
        '課題のご提出ありがとうございます！\n'
        '採点の結果、残念ながら合格基準を満たさず「不合格」となりました、再提出をお願いします。\n'
        '\n'
        '*[課題名]*\n'
        f'{verdict.task_name}\n'
        '\n'
        '*[不合格の理由・修正点]*\n'
        f'{fail_reasons}\n'
        '\n'
        '*[その他フィードバック/良かった点]*\n'
        f'{good_points}\n'
        '\n'
        '上記の点を修正し、「課題提出フォーム」から再度提出をお願いします！\n'
        '不明点があれば、質問フォーム、もしくはメンタリングで解消していきましょう💪'
    )


def build_submission_issue_message(issue: str) -> str:
    return (
        f'{MENTION_LINE}\n'
        '課題のご提出、ありがとうございました！\n'
        f'{issue}'
    )


def render(verdict: Verdict) -> str | None:
    """Return the Slack text for *verdict*, or None when it must not be shown."""
    category = classify(verdict)
    if category == ResultCategory.PASS:
        return build_pass_message(verdict)
    if category == ResultCategory.FAIL:
        return build_fail_message(verdict)
    if category == ResultCategory.REVIEW_WITH_ISSUE:
        return build_submission_issue_message(str(verdict.submission_issue))
    return None
