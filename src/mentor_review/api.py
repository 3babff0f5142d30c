from __future__ import annotations

from ipaddress import ip_address
import logging
import os

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from mentor_review import __version__
from mentor_review.adapters import Drafter, DraftingError
from mentor_review.domain.models import SourceType, Verdict
from mentor_review.observability import task_context
from mentor_review.repository import InMemoryTaskRepository, TaskRepository
from mentor_review.service import (
    CONFLICT_CODES,
    CreateTaskInput,
    InputValidationError,
    PolicyView,
    ReviewService,
    TaskView,
)

_log = logging.getLogger(__name__)

DEFAULT_MENTOR_ID = 'local'


class CreateTaskRequest(BaseModel):
    input_snapshot: str = Field(min_length=1, max_length=50_000)
    source_type: SourceType = Field(default=SourceType.TEXT)
    source_url: str | None = Field(default=None, max_length=2000)
    assignment_code: str | None = Field(default=None, max_length=64)
    policy_id: str | None = Field(default=None, max_length=64)


class VerdictEnvelope(BaseModel):
    verdict: dict | None = Field(default=None)


class PolicyRequest(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    policy_text: str = Field(min_length=1, max_length=5000)


class VerdictResponse(BaseModel):
    result: str
    task_name: str
    good_points: list[str]
    improvements: list[str]
    fail_reasons: list[str]
    submission_issue: str | None
    confidence_note: str | None


class TaskResponse(BaseModel):
    task_id: str
    assignment_code: str | None
    assignment_title: str | None
    policy_id: str | None
    source_type: str
    source_url: str | None
    input_snapshot: str
    status: str
    last_gate_reason: str | None
    verdict: VerdictResponse | None
    final_verdict: VerdictResponse | None
    slack_text: str | None
    category: str | None
    can_copy_to_slack: bool
    can_finalize: bool
    created_at: str
    updated_at: str


class PreviewResponse(BaseModel):
    verdict: VerdictResponse
    category: str
    can_copy_to_slack: bool
    can_finalize: bool
    slack_text: str | None
    advisory_warnings: list[str]


class PolicyResponse(BaseModel):
    policy_id: str
    title: str
    policy_text: str
    created_at: str
    updated_at: str


class AssignmentResponse(BaseModel):
    code: str
    title: str
    description: str


class EventResponse(BaseModel):
    seq: int
    task_id: str
    type: str
    payload: dict
    created_at: str


class StatsResponse(BaseModel):
    total_tasks: int
    status_counts: dict[str, int]
    recent_tasks: list[TaskResponse]


class ValidationErrorResponse(BaseModel):
    code: str
    message: str
    field: str | None = None


class AppState:
    def __init__(self, service: ReviewService):
        self.service = service


def _to_verdict_response(verdict: Verdict | None) -> VerdictResponse | None:
    if verdict is None:
        return None
    return VerdictResponse(**verdict.to_payload())


def _to_task_response(task: TaskView) -> TaskResponse:
    return TaskResponse(
        task_id=task.task_id,
        assignment_code=task.assignment_code,
        assignment_title=task.assignment_title,
        policy_id=task.policy_id,
        source_type=task.source_type.value,
        source_url=task.source_url,
        input_snapshot=task.input_snapshot,
        status=task.status.value,
        last_gate_reason=task.last_gate_reason,
        verdict=_to_verdict_response(task.verdict),
        final_verdict=_to_verdict_response(task.final_verdict),
        slack_text=task.slack_text,
        category=(task.category.value if task.category else None),
        can_copy_to_slack=task.can_copy_to_slack,
        can_finalize=task.can_finalize,
        created_at=task.created_at,
        updated_at=task.updated_at,
    )


def _to_policy_response(policy: PolicyView) -> PolicyResponse:
    return PolicyResponse(
        policy_id=policy.policy_id,
        title=policy.title,
        policy_text=policy.policy_text,
        created_at=policy.created_at,
        updated_at=policy.updated_at,
    )


def create_app(
    *,
    repository: TaskRepository | None = None,
    service: ReviewService | None = None,
    drafter: Drafter | None = None,
    allow_remote_api: bool | None = None,
    api_access_token: str | None = None,
    api_access_token_header: str = 'x-mentor-review-token',
) -> FastAPI:
    if service is None:
        service = ReviewService(repository=repository or InMemoryTaskRepository(), drafter=drafter)

    app = FastAPI(title='mentor-review api', version=__version__)
    app.state.container = AppState(service=service)

    resolved_allow_remote_api = allow_remote_api
    if resolved_allow_remote_api is None:
        resolved_allow_remote_api = str(os.getenv('MENTOR_REVIEW_API_ALLOW_REMOTE', '')).strip().lower() in {
            '1', 'true', 'yes', 'on',
        }
    resolved_api_access_token = api_access_token
    if resolved_api_access_token is None:
        resolved_api_access_token = str(os.getenv('MENTOR_REVIEW_API_TOKEN', '')).strip() or None
    resolved_api_access_token_header = str(
        os.getenv('MENTOR_REVIEW_API_TOKEN_HEADER', api_access_token_header) or api_access_token_header
    ).strip().lower()

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        source_prefixes = {'body', 'query', 'path', 'header', 'cookie'}
        parts = list(loc)
        if parts and str(parts[0]) in source_prefixes:
            parts = parts[1:]
        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
            elif field:
                field += f'.{part}'
            else:
                field = str(part)
        return field or None

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {
            'code': code,
            'message': message,
        }
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=message, field=field),
        )

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(
            status_code=409 if exc.code in CONFLICT_CODES else 400,
            content=_error_payload(message=str(exc), field=exc.field, code=exc.code),
        )

    @app.exception_handler(DraftingError)
    async def handle_drafting_error(request: Request, exc: DraftingError):  # noqa: ARG001
        return JSONResponse(
            status_code=502,
            content=_error_payload(message=str(exc), code='draft_failed'),
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):  # noqa: ARG001
        codes = {401: 'unauthorized', 403: 'forbidden', 404: 'not_found', 405: 'method_not_allowed'}
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(message=str(exc.detail), code=codes.get(exc.status_code, 'http_error')),
        )

    def get_service() -> ReviewService:
        return app.state.container.service

    def get_mentor_id(x_mentor_id: str | None = Header(default=None)) -> str:
        return str(x_mentor_id or '').strip() or DEFAULT_MENTOR_ID

    def _is_loopback_host(host: str | None) -> bool:
        text = str(host or '').strip().lower()
        if not text:
            return False
        if text in {'localhost', 'testclient'}:
            return True
        if text.startswith('::ffff:'):
            text = text[7:]
        try:
            return ip_address(text).is_loopback
        except ValueError:
            return False

    @app.middleware('http')
    async def enforce_api_access_controls(request: Request, call_next):
        if request.url.path.startswith('/api/'):
            client_host = request.client.host if request.client is not None else ''
            if not resolved_allow_remote_api and not _is_loopback_host(client_host):
                return JSONResponse(
                    status_code=403,
                    content=_error_payload(code='forbidden', message='api access denied'),
                )
            if resolved_api_access_token:
                token = request.headers.get(resolved_api_access_token_header)
                if token != resolved_api_access_token:
                    return JSONResponse(
                        status_code=401,
                        content=_error_payload(code='unauthorized', message='invalid api token'),
                    )
        mentor_id = str(request.headers.get('x-mentor-id') or '').strip() or DEFAULT_MENTOR_ID
        with task_context(mentor_id=mentor_id):
            return await call_next(request)

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.get('/api/assignments', response_model=list[AssignmentResponse])
    def list_assignments(service: ReviewService = Depends(get_service)) -> list[AssignmentResponse]:
        return [
            AssignmentResponse(code=a.code, title=a.title, description=a.description)
            for a in service.list_assignments()
        ]

    @app.get('/api/assignments/{code}', response_model=AssignmentResponse)
    def get_assignment(code: str, service: ReviewService = Depends(get_service)) -> AssignmentResponse:
        assignment = service.get_assignment(code)
        if assignment is None:
            raise HTTPException(status_code=404, detail='assignment not found')
        return AssignmentResponse(code=assignment.code, title=assignment.title, description=assignment.description)

    @app.get('/api/policies', response_model=list[PolicyResponse])
    def list_policies(
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> list[PolicyResponse]:
        return [_to_policy_response(p) for p in service.list_policies(mentor_id=mentor_id)]

    @app.post('/api/policies', response_model=PolicyResponse, status_code=201)
    def create_policy(
        payload: PolicyRequest,
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> PolicyResponse:
        policy = service.create_policy(mentor_id=mentor_id, title=payload.title, policy_text=payload.policy_text)
        return _to_policy_response(policy)

    @app.get('/api/policies/{policy_id}', response_model=PolicyResponse)
    def get_policy(
        policy_id: str,
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> PolicyResponse:
        policy = service.get_policy(policy_id, mentor_id=mentor_id)
        if policy is None:
            raise HTTPException(status_code=404, detail='policy not found')
        return _to_policy_response(policy)

    @app.put('/api/policies/{policy_id}', response_model=PolicyResponse)
    def update_policy(
        policy_id: str,
        payload: PolicyRequest,
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> PolicyResponse:
        try:
            policy = service.update_policy(
                policy_id,
                mentor_id=mentor_id,
                title=payload.title,
                policy_text=payload.policy_text,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='policy not found') from exc
        return _to_policy_response(policy)

    @app.delete('/api/policies/{policy_id}', status_code=204)
    def delete_policy(
        policy_id: str,
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> Response:
        try:
            service.delete_policy(policy_id, mentor_id=mentor_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='policy not found') from exc
        return Response(status_code=204)

    @app.post('/api/tasks', response_model=TaskResponse, status_code=201)
    def create_task(
        payload: CreateTaskRequest,
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> TaskResponse:
        task = service.create_task(
            CreateTaskInput(
                mentor_id=mentor_id,
                input_snapshot=payload.input_snapshot,
                source_type=payload.source_type.value,
                source_url=payload.source_url,
                assignment_code=payload.assignment_code,
                policy_id=payload.policy_id,
            )
        )
        return _to_task_response(task)

    @app.get('/api/tasks', response_model=list[TaskResponse])
    def list_tasks(
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[TaskResponse]:
        return [_to_task_response(t) for t in service.list_tasks(mentor_id=mentor_id, limit=limit)]

    @app.get('/api/stats', response_model=StatsResponse)
    def get_stats(
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> StatsResponse:
        stats = service.get_stats(mentor_id=mentor_id)
        return StatsResponse(
            total_tasks=stats.total_tasks,
            status_counts=stats.status_counts,
            recent_tasks=[_to_task_response(t) for t in stats.recent_tasks],
        )

    @app.get('/api/tasks/{task_id}', response_model=TaskResponse)
    def get_task(
        task_id: str,
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> TaskResponse:
        task = service.get_task(task_id, mentor_id=mentor_id)
        if task is None:
            raise HTTPException(status_code=404, detail='task not found')
        return _to_task_response(task)

    @app.delete('/api/tasks/{task_id}', status_code=204)
    def delete_task(
        task_id: str,
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> Response:
        try:
            service.delete_task(task_id, mentor_id=mentor_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return Response(status_code=204)

    @app.post('/api/tasks/{task_id}/draft', response_model=TaskResponse)
    def generate_draft(
        task_id: str,
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> TaskResponse:
        try:
            task = service.generate_ai_draft(task_id, mentor_id=mentor_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return _to_task_response(task)

    @app.put('/api/tasks/{task_id}/verdict', response_model=TaskResponse)
    def update_verdict(
        task_id: str,
        payload: dict = Body(...),
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> TaskResponse:
        try:
            task = service.update_verdict(task_id, mentor_id=mentor_id, verdict_payload=payload)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return _to_task_response(task)

    @app.post('/api/tasks/{task_id}/preview', response_model=PreviewResponse)
    def preview(
        task_id: str,
        payload: VerdictEnvelope | None = None,
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> PreviewResponse:
        try:
            result = service.preview(
                task_id,
                mentor_id=mentor_id,
                verdict_payload=(payload.verdict if payload is not None else None),
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return PreviewResponse(
            verdict=VerdictResponse(**result.verdict.to_payload()),
            category=result.category.value,
            can_copy_to_slack=result.can_copy_to_slack,
            can_finalize=result.can_finalize,
            slack_text=result.slack_text,
            advisory_warnings=result.advisory_warnings,
        )

    @app.post('/api/tasks/{task_id}/finalize', response_model=TaskResponse)
    def finalize_task(
        task_id: str,
        payload: VerdictEnvelope | None = None,
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> TaskResponse:
        try:
            task = service.finalize_task(
                task_id,
                mentor_id=mentor_id,
                verdict_payload=(payload.verdict if payload is not None else None),
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return _to_task_response(task)

    @app.get('/api/tasks/{task_id}/events', response_model=list[EventResponse])
    def list_events(
        task_id: str,
        service: ReviewService = Depends(get_service),
        mentor_id: str = Depends(get_mentor_id),
    ) -> list[EventResponse]:
        try:
            rows = service.list_events(task_id, mentor_id=mentor_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return [
            EventResponse(
                seq=int(row['seq']),
                task_id=str(row['task_id']),
                type=str(row['type']),
                payload=dict(row.get('payload', {})),
                created_at=str(row['created_at']),
            )
            for row in rows
        ]

    return app
