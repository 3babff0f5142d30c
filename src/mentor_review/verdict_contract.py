from __future__ import annotations

from dataclasses import replace
import json
import re
from typing import Annotated

from pydantic import BaseModel, Field, StringConstraints, ValidationError, field_validator

from mentor_review.domain.models import Outcome, Verdict

MAX_POINTS = 4
MAX_POINT_CHARS = 200

_FENCED_JSON_RE = re.compile(r'```(?:json)?\s*(\{.*?\})\s*```', re.IGNORECASE | re.DOTALL)

PointText = Annotated[str, StringConstraints(min_length=1, max_length=MAX_POINT_CHARS)]


class VerdictContractError(ValueError):
    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field


class VerdictPayload(BaseModel):
    result: Outcome
    task_name: str = Field(default='', max_length=200)
    good_points: list[PointText] = Field(default_factory=list, max_length=MAX_POINTS)
    improvements: list[PointText] = Field(default_factory=list, max_length=MAX_POINTS)
    fail_reasons: list[PointText] = Field(default_factory=list, max_length=MAX_POINTS)
    submission_issue: str | None = Field(default=None, max_length=2000)
    confidence_note: str | None = Field(default=None, max_length=300)

    @field_validator('good_points', 'improvements', 'fail_reasons', mode='before')
    @classmethod
    def drop_empty_points(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            return value
        return [item for item in value if item is not None and item != '']

    @field_validator('task_name', mode='before')
    @classmethod
    def strip_task_name(cls, value):
        return str(value or '').strip()

    @field_validator('submission_issue', mode='before')
    @classmethod
    def empty_issue_to_none(cls, value):
        # Rendered verbatim into Slack; only an absent or empty issue is dropped.
        if value is None or value == '':
            return None
        return value

    @field_validator('confidence_note', mode='before')
    @classmethod
    def blank_note_to_none(cls, value):
        text = str(value or '').strip()
        return text or None

    def to_verdict(self) -> Verdict:
        return Verdict(
            outcome=self.result,
            task_name=self.task_name,
            good_points=tuple(self.good_points),
            improvements=tuple(self.improvements),
            fail_reasons=tuple(self.fail_reasons),
            submission_issue=self.submission_issue,
            confidence_note=self.confidence_note,
        )


def _iter_json_candidates(output: str) -> list[str]:
    text = str(output or '').strip()
    if not text:
        return []
    candidates: list[str] = [text]
    for match in _FENCED_JSON_RE.finditer(text):
        payload = str(match.group(1) or '').strip()
        if payload:
            candidates.append(payload)
    return candidates


def parse_json_object(output: str) -> dict | None:
    for candidate in _iter_json_candidates(output):
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _field_from_loc(loc: tuple) -> str | None:
    field = ''
    for part in loc:
        if isinstance(part, int):
            field += f'[{part}]'
        elif field:
            field += f'.{part}'
        else:
            field = str(part)
    return field or None


def parse_verdict_payload(raw: dict | str, *, task_name: str | None = None) -> Verdict:
    """Validate an untrusted verdict-shaped object and return a Verdict.

    *raw* may be a decoded dict or model output text holding one JSON object.
    A non-empty *task_name* replaces whatever name the payload carries.
    """
    if isinstance(raw, str):
        parsed = parse_json_object(raw)
        if parsed is None:
            raise VerdictContractError('verdict output is not a JSON object')
        raw = parsed
    if not isinstance(raw, dict):
        raise VerdictContractError('verdict payload must be an object')
    try:
        payload = VerdictPayload.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        raise VerdictContractError(
            str(first.get('msg') or 'invalid verdict payload'),
            field=_field_from_loc(tuple(first.get('loc') or ())),
        ) from exc
    verdict = payload.to_verdict()
    name = str(task_name or '').strip()
    if name:
        verdict = replace(verdict, task_name=name)
    return verdict
