from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlparse

from mentor_review.adapters import Drafter, DraftingError, DraftRequest, DryRunDrafter
from mentor_review.catalog import Assignment, AssignmentCatalog
from mentor_review.domain.classifier import can_copy_to_slack, classify
from mentor_review.domain.events import EventType
from mentor_review.domain.gate import can_finalize, evaluate_finalize_gate
from mentor_review.domain.models import ResultCategory, SourceType, TaskStatus, Verdict, can_transition
from mentor_review.domain.slack_template import render
from mentor_review.observability import get_logger, set_task_context
from mentor_review.repository import TaskCreateRecord, TaskRepository
from mentor_review.verdict_contract import VerdictContractError, parse_verdict_payload

_log = get_logger('mentor_review.service')

MAX_INPUT_SNAPSHOT_CHARS = 50_000
MAX_POLICY_TITLE_CHARS = 100
MAX_POLICY_TEXT_CHARS = 5_000
RECENT_TASKS_LIMIT = 5

# Gate reasons that describe a state conflict rather than bad input.
CONFLICT_CODES = frozenset({'already_finalized', 'review_unresolved', 'task_finalized'})


class InputValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


@dataclass(frozen=True)
class CreateTaskInput:
    mentor_id: str
    input_snapshot: str
    source_type: str = SourceType.TEXT.value
    source_url: str | None = None
    assignment_code: str | None = None
    policy_id: str | None = None


@dataclass(frozen=True)
class TaskView:
    task_id: str
    mentor_id: str
    assignment_code: str | None
    assignment_title: str | None
    policy_id: str | None
    source_type: SourceType
    source_url: str | None
    input_snapshot: str
    status: TaskStatus
    last_gate_reason: str | None
    verdict: Verdict | None
    final_verdict: Verdict | None
    slack_text: str | None
    category: ResultCategory | None
    can_copy_to_slack: bool
    can_finalize: bool
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PreviewView:
    verdict: Verdict
    category: ResultCategory
    can_copy_to_slack: bool
    can_finalize: bool
    slack_text: str | None
    advisory_warnings: list[str]


@dataclass(frozen=True)
class PolicyView:
    policy_id: str
    mentor_id: str
    title: str
    policy_text: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class StatsView:
    total_tasks: int
    status_counts: dict[str, int]
    recent_tasks: list[TaskView]


class ReviewService:
    def __init__(
        self,
        *,
        repository: TaskRepository,
        drafter: Drafter | None = None,
        catalog: AssignmentCatalog | None = None,
    ):
        self.repository = repository
        self.drafter = drafter or DryRunDrafter()
        self.catalog = catalog or AssignmentCatalog()

    def list_assignments(self) -> list[Assignment]:
        return self.catalog.list_assignments()

    def get_assignment(self, code: str) -> Assignment | None:
        return self.catalog.get(code)

    def create_task(self, payload: CreateTaskInput) -> TaskView:
        mentor_id = self._normalize_mentor_id(payload.mentor_id)
        snapshot = str(payload.input_snapshot or '')
        if not snapshot.strip():
            raise InputValidationError('input_snapshot is required', field='input_snapshot')
        if len(snapshot) > MAX_INPUT_SNAPSHOT_CHARS:
            raise InputValidationError(
                f'input_snapshot must be at most {MAX_INPUT_SNAPSHOT_CHARS} characters',
                field='input_snapshot',
            )
        source_type = self._normalize_source_type(payload.source_type)
        source_url = self._normalize_source_url(payload.source_url)

        assignment_code = str(payload.assignment_code or '').strip() or None
        if assignment_code and self.catalog.get(assignment_code) is None:
            raise InputValidationError(
                f'unknown assignment: {assignment_code}',
                field='assignment_code',
                code='unknown_assignment',
            )
        policy_id = str(payload.policy_id or '').strip() or None
        if policy_id and self._owned_policy_row(policy_id, mentor_id=mentor_id) is None:
            raise InputValidationError(
                f'unknown policy: {policy_id}',
                field='policy_id',
                code='unknown_policy',
            )

        row = self.repository.create_task_record(
            TaskCreateRecord(
                mentor_id=mentor_id,
                source_type=source_type.value,
                input_snapshot=snapshot,
                source_url=source_url,
                assignment_code=assignment_code,
                policy_id=policy_id,
            )
        )
        set_task_context(task_id=row['task_id'], mentor_id=mentor_id)
        self.repository.append_event(
            row['task_id'],
            event_type=EventType.TASK_CREATED,
            payload={
                'source_type': source_type.value,
                'assignment_code': assignment_code,
                'policy_id': policy_id,
                'input_chars': len(snapshot),
            },
        )
        _log.info('task created task_id=%s source_type=%s', row['task_id'], source_type.value)
        return self._to_view(row)

    def list_tasks(self, *, mentor_id: str, limit: int = 100) -> list[TaskView]:
        rows = self.repository.list_tasks(mentor_id=self._normalize_mentor_id(mentor_id), limit=limit)
        return [self._to_view(row) for row in rows]

    def get_task(self, task_id: str, *, mentor_id: str) -> TaskView | None:
        row = self._owned_task_row(task_id, mentor_id=mentor_id)
        if row is None:
            return None
        return self._to_view(row)

    def get_stats(self, *, mentor_id: str) -> StatsView:
        rows = self.repository.list_tasks(mentor_id=self._normalize_mentor_id(mentor_id), limit=10_000)
        counts = {status.value: 0 for status in TaskStatus}
        for row in rows:
            status = str(row.get('status', ''))
            if status in counts:
                counts[status] += 1
        return StatsView(
            total_tasks=len(rows),
            status_counts=counts,
            recent_tasks=[self._to_view(row) for row in rows[:RECENT_TASKS_LIMIT]],
        )

    def list_events(self, task_id: str, *, mentor_id: str) -> list[dict]:
        self._require_task_row(task_id, mentor_id=mentor_id)
        return self.repository.list_events(task_id)

    def delete_task(self, task_id: str, *, mentor_id: str) -> None:
        row = self._require_task_row(task_id, mentor_id=mentor_id)
        self.repository.delete_tasks([task_id])
        _log.info('task deleted task_id=%s status=%s', task_id, row.get('status'))

    def generate_ai_draft(self, task_id: str, *, mentor_id: str) -> TaskView:
        """Ask the drafter for a verdict and store it as the task's current verdict.

        A draft task moves to reviewed. A reviewed task keeps its status and
        gets the new draft. Finalized tasks are refused. On any drafter or
        contract failure the task is left untouched, a ``draft_failed`` event
        is recorded and :class:`DraftingError` is raised.
        """
        row = self._require_task_row(task_id, mentor_id=mentor_id)
        set_task_context(task_id=task_id, mentor_id=row['mentor_id'])
        self._refuse_if_finalized(row)

        assignment = self.catalog.get(row.get('assignment_code'))
        policy = self._owned_policy_row(row.get('policy_id'), mentor_id=row['mentor_id'])
        request = DraftRequest(
            assignment_title=(assignment.title if assignment else ''),
            assignment_description=(assignment.description if assignment else ''),
            policy_text=(policy.get('policy_text') if policy else None),
            input_snapshot=str(row.get('input_snapshot') or ''),
        )
        drafter_name = str(getattr(self.drafter, 'name', self.drafter.__class__.__name__))
        self.repository.append_event(
            task_id,
            event_type=EventType.DRAFT_STARTED,
            payload={'drafter': drafter_name},
        )

        result = self.drafter.draft(request)
        if not result.ok:
            raise self._draft_failure(task_id, drafter=drafter_name, reason=str(result.error or 'draft_failed'))
        try:
            verdict = parse_verdict_payload(result.payload, task_name=(assignment.title if assignment else None))
        except VerdictContractError as exc:
            raise self._draft_failure(
                task_id,
                drafter=drafter_name,
                reason=f'contract_violation: {exc.message}',
                field=exc.field,
            ) from exc
        self._warn_advisory(task_id, verdict)

        try:
            updated = self._store_verdict(row, verdict)
        except InputValidationError as exc:
            self._draft_failure(task_id, drafter=drafter_name, reason=exc.code, field=exc.field)
            raise
        self.repository.append_event(
            task_id,
            event_type=EventType.DRAFT_GENERATED,
            payload={
                'drafter': drafter_name,
                'model': result.model,
                'result': verdict.outcome.value,
                'category': classify(verdict).value,
                'duration_seconds': round(float(result.duration_seconds), 3),
            },
        )
        _log.info('draft generated task_id=%s result=%s', task_id, verdict.outcome.value)
        return self._to_view(updated)

    def update_verdict(self, task_id: str, *, mentor_id: str, verdict_payload: dict) -> TaskView:
        row = self._require_task_row(task_id, mentor_id=mentor_id)
        set_task_context(task_id=task_id, mentor_id=row['mentor_id'])
        self._refuse_if_finalized(row)
        verdict = self._parse_mentor_verdict(row, verdict_payload)
        self._warn_advisory(task_id, verdict)
        updated = self._store_verdict(row, verdict)
        self.repository.append_event(
            task_id,
            event_type=EventType.VERDICT_UPDATED,
            payload={'result': verdict.outcome.value, 'category': classify(verdict).value},
        )
        return self._to_view(updated)

    def preview(self, task_id: str, *, mentor_id: str, verdict_payload: dict | None = None) -> PreviewView:
        row = self._require_task_row(task_id, mentor_id=mentor_id)
        if verdict_payload is None:
            verdict = self._stored_verdict(row.get('verdict'))
            if verdict is None:
                raise InputValidationError('task has no verdict yet', field='verdict', code='verdict_missing')
        else:
            verdict = self._parse_mentor_verdict(row, verdict_payload)
        return PreviewView(
            verdict=verdict,
            category=classify(verdict),
            can_copy_to_slack=can_copy_to_slack(verdict),
            can_finalize=can_finalize(verdict),
            slack_text=render(verdict),
            advisory_warnings=verdict.advisory_violations(),
        )

    def finalize_task(self, task_id: str, *, mentor_id: str, verdict_payload: dict | None = None) -> TaskView:
        """Gate, render and persist the final verdict.

        *verdict_payload* is the mentor's last edit; without it the stored
        verdict is finalized. The stored Slack text is always ``render`` of
        the stored final verdict.
        """
        row = self._require_task_row(task_id, mentor_id=mentor_id)
        set_task_context(task_id=task_id, mentor_id=row['mentor_id'])
        if verdict_payload is None or str(row.get('status')) == TaskStatus.FINALIZED.value:
            verdict = self._stored_verdict(row.get('verdict'))
        else:
            verdict = self._parse_mentor_verdict(row, verdict_payload)

        outcome = evaluate_finalize_gate(status=str(row['status']), verdict=verdict)
        if not outcome.passed:
            raise self._finalize_rejection(row, outcome.reason)

        assert verdict is not None
        self._warn_advisory(task_id, verdict)
        slack_text = render(verdict)
        payload = verdict.to_payload()
        updated = self.repository.update_task_status_if(
            task_id,
            expected_status=TaskStatus.REVIEWED.value,
            status=TaskStatus.FINALIZED.value,
            reason=outcome.reason,
            verdict=payload,
            final_verdict=payload,
            slack_text=slack_text,
        )
        if updated is None:
            latest = self.repository.get_task(task_id)
            if latest is None:
                raise KeyError(task_id)
            latest_status = str(latest.get('status'))
            reason = 'already_finalized' if latest_status == TaskStatus.FINALIZED.value else 'not_reviewed'
            raise self._finalize_rejection(latest, reason)

        self.repository.append_event(
            task_id,
            event_type=EventType.FINALIZED,
            payload={
                'result': verdict.outcome.value,
                'category': classify(verdict).value,
                'slack_chars': len(slack_text or ''),
            },
        )
        _log.info('task finalized task_id=%s result=%s', task_id, verdict.outcome.value)
        return self._to_view(updated)

    def list_policies(self, *, mentor_id: str) -> list[PolicyView]:
        rows = self.repository.list_policies(mentor_id=self._normalize_mentor_id(mentor_id))
        return [self._to_policy_view(row) for row in rows]

    def get_policy(self, policy_id: str, *, mentor_id: str) -> PolicyView | None:
        row = self._owned_policy_row(policy_id, mentor_id=mentor_id)
        if row is None:
            return None
        return self._to_policy_view(row)

    def create_policy(self, *, mentor_id: str, title: str, policy_text: str) -> PolicyView:
        clean_title, clean_text = self._validate_policy_fields(title=title, policy_text=policy_text)
        row = self.repository.create_policy(
            mentor_id=self._normalize_mentor_id(mentor_id),
            title=clean_title,
            policy_text=clean_text,
        )
        _log.info('policy created policy_id=%s', row['policy_id'])
        return self._to_policy_view(row)

    def update_policy(self, policy_id: str, *, mentor_id: str, title: str, policy_text: str) -> PolicyView:
        if self._owned_policy_row(policy_id, mentor_id=mentor_id) is None:
            raise KeyError(policy_id)
        clean_title, clean_text = self._validate_policy_fields(title=title, policy_text=policy_text)
        row = self.repository.update_policy(policy_id, title=clean_title, policy_text=clean_text)
        return self._to_policy_view(row)

    def delete_policy(self, policy_id: str, *, mentor_id: str) -> None:
        if self._owned_policy_row(policy_id, mentor_id=mentor_id) is None:
            raise KeyError(policy_id)
        self.repository.delete_policy(policy_id)
        _log.info('policy deleted policy_id=%s', policy_id)

    def _store_verdict(self, row: dict, verdict: Verdict) -> dict:
        """Write *verdict* as the current verdict, leaving the task reviewed.

        The write is conditional on the status last seen, so a finalize that
        commits in between is never overwritten.
        """
        task_id = str(row['task_id'])
        payload = verdict.to_payload()
        current = row
        # Statuses only move forward, so this settles within one pass per status.
        for _ in TaskStatus:
            self._refuse_if_finalized(current)
            status = str(current.get('status'))
            if status != TaskStatus.REVIEWED.value and not can_transition(status, TaskStatus.REVIEWED):
                break
            updated = self.repository.update_task_status_if(
                task_id,
                expected_status=status,
                status=TaskStatus.REVIEWED.value,
                reason=None,
                verdict=payload,
            )
            if updated is not None:
                return updated
            latest = self.repository.get_task(task_id)
            if latest is None:
                raise KeyError(task_id)
            current = latest
        raise InputValidationError(
            f'task status {current.get("status")} does not accept a verdict',
            field='status',
            code='task_finalized',
        )

    def _draft_failure(self, task_id: str, *, drafter: str, reason: str, field: str | None = None) -> DraftingError:
        self.repository.append_event(
            task_id,
            event_type=EventType.DRAFT_FAILED,
            payload={'drafter': drafter, 'reason': reason, 'field': field},
        )
        _log.warning('draft failed task_id=%s drafter=%s reason=%s', task_id, drafter, reason)
        return DraftingError(reason)

    def _finalize_rejection(self, row: dict, reason: str) -> InputValidationError:
        task_id = str(row['task_id'])
        if str(row.get('status')) != TaskStatus.FINALIZED.value:
            self.repository.set_last_gate_reason(task_id, reason=reason)
        self.repository.append_event(
            task_id,
            event_type=EventType.FINALIZE_REJECTED,
            payload={'reason': reason, 'status': str(row.get('status'))},
        )
        _log.info('finalize rejected task_id=%s reason=%s', task_id, reason)
        return InputValidationError(self._gate_message(reason), field='status', code=reason)

    @staticmethod
    def _gate_message(reason: str) -> str:
        messages = {
            'already_finalized': 'task is already finalized',
            'not_reviewed': 'task has no reviewed verdict yet',
            'verdict_missing': 'task has no verdict to finalize',
            'review_unresolved': 'Review verdict without a submission issue cannot be finalized',
        }
        return messages.get(reason, reason)

    @staticmethod
    def _refuse_if_finalized(row: dict) -> None:
        if str(row.get('status')) == TaskStatus.FINALIZED.value:
            raise InputValidationError('task is finalized and can no longer be edited', field='status', code='task_finalized')

    def _parse_mentor_verdict(self, row: dict, verdict_payload: dict) -> Verdict:
        assignment = self.catalog.get(row.get('assignment_code'))
        try:
            return parse_verdict_payload(verdict_payload, task_name=(assignment.title if assignment else None))
        except VerdictContractError as exc:
            field = f'verdict.{exc.field}' if exc.field else 'verdict'
            raise InputValidationError(exc.message, field=field, code='invalid_verdict') from exc

    @staticmethod
    def _warn_advisory(task_id: str, verdict: Verdict) -> None:
        violations = verdict.advisory_violations()
        if violations:
            _log.warning('verdict breaks advisory rules task_id=%s violations=%s', task_id, ','.join(violations))

    @staticmethod
    def _stored_verdict(raw: dict | None) -> Verdict | None:
        if not raw:
            return None
        try:
            return parse_verdict_payload(raw)
        except VerdictContractError:
            _log.warning('stored verdict failed validation; treating as missing')
            return None

    def _owned_task_row(self, task_id: str, *, mentor_id: str) -> dict | None:
        row = self.repository.get_task(str(task_id or '').strip())
        if row is None or row.get('mentor_id') != self._normalize_mentor_id(mentor_id):
            return None
        return row

    def _require_task_row(self, task_id: str, *, mentor_id: str) -> dict:
        row = self._owned_task_row(task_id, mentor_id=mentor_id)
        if row is None:
            raise KeyError(task_id)
        return row

    def _owned_policy_row(self, policy_id: str | None, *, mentor_id: str) -> dict | None:
        key = str(policy_id or '').strip()
        if not key:
            return None
        row = self.repository.get_policy(key)
        if row is None or row.get('mentor_id') != self._normalize_mentor_id(mentor_id):
            return None
        return row

    @staticmethod
    def _normalize_mentor_id(value: str | None) -> str:
        text = str(value or '').strip()
        if not text:
            raise InputValidationError('mentor id is required', field='mentor_id')
        return text

    @staticmethod
    def _normalize_source_type(value: str | None) -> SourceType:
        text = str(value or SourceType.TEXT.value).strip().lower()
        try:
            return SourceType(text)
        except ValueError as exc:
            allowed = ', '.join(s.value for s in SourceType)
            raise InputValidationError(f'source_type must be one of: {allowed}', field='source_type') from exc

    @staticmethod
    def _normalize_source_url(value: str | None) -> str | None:
        text = str(value or '').strip()
        if not text:
            return None
        parsed = urlparse(text)
        if parsed.scheme not in {'http', 'https'} or not parsed.netloc:
            raise InputValidationError('source_url must be an http(s) URL', field='source_url')
        return text

    @staticmethod
    def _validate_policy_fields(*, title: str, policy_text: str) -> tuple[str, str]:
        clean_title = str(title or '').strip()
        clean_text = str(policy_text or '').strip()
        if not clean_title:
            raise InputValidationError('title is required', field='title')
        if len(clean_title) > MAX_POLICY_TITLE_CHARS:
            raise InputValidationError(f'title must be at most {MAX_POLICY_TITLE_CHARS} characters', field='title')
        if not clean_text:
            raise InputValidationError('policy_text is required', field='policy_text')
        if len(clean_text) > MAX_POLICY_TEXT_CHARS:
            raise InputValidationError(
                f'policy_text must be at most {MAX_POLICY_TEXT_CHARS} characters',
                field='policy_text',
            )
        return clean_title, clean_text

    def _to_view(self, row: dict) -> TaskView:
        verdict = self._stored_verdict(row.get('verdict'))
        final_verdict = self._stored_verdict(row.get('final_verdict'))
        assignment = self.catalog.get(row.get('assignment_code'))
        return TaskView(
            task_id=str(row['task_id']),
            mentor_id=str(row['mentor_id']),
            assignment_code=row.get('assignment_code'),
            assignment_title=(assignment.title if assignment else None),
            policy_id=row.get('policy_id'),
            source_type=SourceType(str(row.get('source_type') or SourceType.TEXT.value)),
            source_url=row.get('source_url'),
            input_snapshot=str(row.get('input_snapshot') or ''),
            status=TaskStatus(str(row['status'])),
            last_gate_reason=row.get('last_gate_reason'),
            verdict=verdict,
            final_verdict=final_verdict,
            slack_text=row.get('slack_text'),
            category=(classify(verdict) if verdict else None),
            can_copy_to_slack=(can_copy_to_slack(verdict) if verdict else False),
            can_finalize=(
                verdict is not None
                and str(row['status']) == TaskStatus.REVIEWED.value
                and can_finalize(verdict)
            ),
            created_at=str(row.get('created_at', '')),
            updated_at=str(row.get('updated_at', '')),
        )

    @staticmethod
    def _to_policy_view(row: dict) -> PolicyView:
        return PolicyView(
            policy_id=str(row['policy_id']),
            mentor_id=str(row['mentor_id']),
            title=str(row['title']),
            policy_text=str(row['policy_text']),
            created_at=str(row.get('created_at', '')),
            updated_at=str(row.get('updated_at', '')),
        )
