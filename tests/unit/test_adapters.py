from __future__ import annotations

from types import SimpleNamespace

from openai import OpenAIError
import pytest

from mentor_review.adapters import DrafterFactory, DraftRequest, DryRunDrafter, OpenAIDrafter
from mentor_review.adapters.dry_run import DRY_RUN_NOTE
from mentor_review.config import Settings
from mentor_review.verdict_contract import parse_verdict_payload


def _request(**overrides) -> DraftRequest:
    values = {
        'assignment_title': '【提出課題①】LengthBasedExampleSelector',
        'assignment_description': '要件1〜3',
        'input_snapshot': 'class Selector: ...',
        'policy_text': None,
    }
    values.update(overrides)
    return DraftRequest(**values)


class _FakeCompletions:
    def __init__(self, *, content=None, error: Exception | None = None):
        self.content = content
        self.error = error
        self.calls: list[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _fake_client(completions: _FakeCompletions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _settings(**overrides) -> Settings:
    values = {
        'database_url': 'sqlite+pysqlite:///:memory:',
        'service_name': 'mentor-review',
        'otel_endpoint': None,
        'dry_run': False,
        'openai_api_key': 'sk-test',
        'openai_model': 'gpt-4o-mini',
        'openai_temperature': 0.3,
        'ai_timeout_seconds': 60,
        'ai_max_retries': 2,
    }
    values.update(overrides)
    return Settings(**values)


def test_dry_run_drafter_returns_unresolved_review():
    result = DryRunDrafter().draft(_request())
    assert result.ok is True
    assert result.payload['result'] == 'Review'
    assert result.payload['submission_issue'] is None
    assert result.payload['confidence_note'] == DRY_RUN_NOTE
    verdict = parse_verdict_payload(result.payload)
    assert verdict.submission_issue is None


def test_openai_drafter_without_key_fails_without_calling():
    result = OpenAIDrafter(api_key=None).draft(_request())
    assert result.ok is False
    assert result.error == 'openai_api_key_missing'


def test_openai_drafter_sends_json_mode_request():
    completions = _FakeCompletions(content='{"result": "Pass", "good_points": ["動作する"]}')
    drafter = OpenAIDrafter(api_key='sk-test', model='gpt-4o-mini', temperature=0.3, client=_fake_client(completions))

    result = drafter.draft(_request(policy_text='テスト必須'))

    assert result.ok is True
    assert result.payload == {'result': 'Pass', 'good_points': ['動作する']}
    assert result.model == 'gpt-4o-mini'
    call = completions.calls[0]
    assert call['model'] == 'gpt-4o-mini'
    assert call['temperature'] == pytest.approx(0.3)
    assert call['response_format'] == {'type': 'json_object'}
    roles = [m['role'] for m in call['messages']]
    assert roles == ['system', 'user']
    assert '【評価ポリシー】\nテスト必須' in call['messages'][1]['content']
    assert 'class Selector: ...' in call['messages'][1]['content']


def test_openai_drafter_reports_api_errors():
    completions = _FakeCompletions(error=OpenAIError('rate limited'))
    result = OpenAIDrafter(api_key='sk-test', client=_fake_client(completions)).draft(_request())
    assert result.ok is False
    assert result.error == 'ai_call_failed: rate limited'


def test_openai_drafter_reports_empty_content():
    completions = _FakeCompletions(content='   ')
    result = OpenAIDrafter(api_key='sk-test', client=_fake_client(completions)).draft(_request())
    assert result.ok is False
    assert result.error == 'empty_response'


def test_openai_drafter_reports_invalid_json():
    completions = _FakeCompletions(content='I think this passes.')
    result = OpenAIDrafter(api_key='sk-test', client=_fake_client(completions)).draft(_request())
    assert result.ok is False
    assert result.error == 'invalid_json'


def test_openai_drafter_accepts_fenced_json():
    completions = _FakeCompletions(content='```json\n{"result": "Fail", "fail_reasons": ["未実装"]}\n```')
    result = OpenAIDrafter(api_key='sk-test', client=_fake_client(completions)).draft(_request())
    assert result.ok is True
    assert result.payload['fail_reasons'] == ['未実装']


def test_factory_returns_dry_run_drafter_in_dry_run_mode():
    drafter = DrafterFactory.create(_settings(dry_run=True))
    assert isinstance(drafter, DryRunDrafter)


def test_factory_passes_openai_settings():
    drafter = DrafterFactory.create(
        _settings(openai_model='gpt-4o', openai_temperature=0.7, ai_timeout_seconds=30, ai_max_retries=0)
    )
    assert isinstance(drafter, OpenAIDrafter)
    assert drafter.api_key == 'sk-test'
    assert drafter.model == 'gpt-4o'
    assert drafter.temperature == pytest.approx(0.7)
    assert drafter.timeout_seconds == 30
    assert drafter.max_retries == 0
