from __future__ import annotations

import logging
import time

from openai import OpenAI, OpenAIError

from mentor_review.adapters.base import DraftRequest, DraftResult
from mentor_review.prompting import build_system_prompt, build_user_prompt
from mentor_review.verdict_contract import parse_json_object

_log = logging.getLogger(__name__)


class OpenAIDrafter:
    name = 'openai'

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = 'gpt-4o-mini',
        temperature: float = 0.3,
        timeout_seconds: int = 60,
        max_retries: int = 2,
        client: OpenAI | None = None,
    ):
        self.api_key = str(api_key or '').strip() or None
        self.model = model
        self.temperature = float(temperature)
        self.timeout_seconds = max(1, int(timeout_seconds))
        self.max_retries = max(0, int(max_retries))
        self._client = client

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(
                api_key=self.api_key,
                timeout=float(self.timeout_seconds),
                max_retries=self.max_retries,
            )
        return self._client

    def draft(self, request: DraftRequest) -> DraftResult:
        if self._client is None and not self.api_key:
            return DraftResult.failure('openai_api_key_missing', model=self.model)

        started = time.monotonic()
        messages = [
            {'role': 'system', 'content': build_system_prompt()},
            {
                'role': 'user',
                'content': build_user_prompt(
                    assignment_title=request.assignment_title,
                    assignment_description=request.assignment_description,
                    policy_text=request.policy_text,
                    input_snapshot=request.input_snapshot,
                ),
            },
        ]
        try:
            response = self._get_client().chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                response_format={'type': 'json_object'},
            )
        except OpenAIError as exc:
            elapsed = time.monotonic() - started
            _log.warning('openai draft call failed model=%s error=%s', self.model, exc.__class__.__name__)
            return DraftResult.failure(f'ai_call_failed: {exc}', model=self.model, duration_seconds=elapsed)

        elapsed = time.monotonic() - started
        choices = list(getattr(response, 'choices', None) or [])
        message = getattr(choices[0], 'message', None) if choices else None
        content = str(getattr(message, 'content', None) or '').strip()
        if not content:
            return DraftResult.failure('empty_response', model=self.model, duration_seconds=elapsed)

        parsed = parse_json_object(content)
        if parsed is None:
            return DraftResult.failure('invalid_json', model=self.model, duration_seconds=elapsed)
        return DraftResult(ok=True, payload=parsed, model=self.model, duration_seconds=elapsed)
