from __future__ import annotations

from pathlib import Path

import pytest

from mentor_review.db import Database, SqlTaskRepository
from mentor_review.domain.events import EventType
from mentor_review.repository import InMemoryTaskRepository, TaskCreateRecord, unique_ids


@pytest.fixture(params=['memory', 'sqlite'])
def repo(request, tmp_path: Path):
    if request.param == 'memory':
        return InMemoryTaskRepository()
    db = Database(f'sqlite+pysqlite:///{tmp_path / "repo.sqlite3"}')
    db.create_schema()
    return SqlTaskRepository(db)


def _create(repo, *, mentor_id='m1', **overrides):
    record = TaskCreateRecord(
        mentor_id=mentor_id,
        source_type=overrides.pop('source_type', 'text'),
        input_snapshot=overrides.pop('input_snapshot', 'def select(): ...'),
        **overrides,
    )
    return repo.create_task_record(record)


def test_create_task_starts_as_draft_without_verdict(repo):
    row = _create(repo, source_url=' https://colab.example/x ', assignment_code='9-6')
    assert row['status'] == 'draft'
    assert row['verdict'] is None
    assert row['final_verdict'] is None
    assert row['slack_text'] is None
    assert row['source_url'] == 'https://colab.example/x'
    assert row['assignment_code'] == '9-6'
    assert repo.get_task(row['task_id'])['mentor_id'] == 'm1'


def test_list_tasks_is_scoped_to_mentor(repo):
    mine = _create(repo, mentor_id='m1')
    _create(repo, mentor_id='m2')
    rows = repo.list_tasks(mentor_id='m1')
    assert [r['task_id'] for r in rows] == [mine['task_id']]


def test_update_task_status_if_is_compare_and_set(repo):
    row = _create(repo)
    verdict = {'result': 'Pass', 'good_points': ['ok']}

    moved = repo.update_task_status_if(
        row['task_id'],
        expected_status='draft',
        status='reviewed',
        reason=None,
        verdict=verdict,
    )
    assert moved is not None
    assert moved['status'] == 'reviewed'
    assert moved['verdict'] == verdict

    stale = repo.update_task_status_if(
        row['task_id'],
        expected_status='draft',
        status='reviewed',
        reason=None,
    )
    assert stale is None


def test_finalize_writes_final_verdict_and_slack_text_together(repo):
    row = _create(repo)
    repo.update_task_status_if(row['task_id'], expected_status='draft', status='reviewed', reason=None)
    final = {'result': 'Review', 'submission_issue': '別課題のリンクです'}
    done = repo.update_task_status_if(
        row['task_id'],
        expected_status='reviewed',
        status='finalized',
        reason='passed',
        final_verdict=final,
        slack_text='@受講生\n課題のご提出、ありがとうございました！\n別課題のリンクです',
    )
    assert done['status'] == 'finalized'
    assert done['final_verdict'] == final
    assert done['slack_text'].endswith('別課題のリンクです')
    assert done['last_gate_reason'] == 'passed'

    again = repo.update_task_status_if(
        row['task_id'],
        expected_status='reviewed',
        status='finalized',
        reason='passed',
        slack_text='other',
    )
    assert again is None
    assert repo.get_task(row['task_id'])['slack_text'].endswith('別課題のリンクです')


def test_update_task_status_if_missing_task_raises_key_error(repo):
    with pytest.raises(KeyError):
        repo.update_task_status_if('task-missing', expected_status='draft', status='reviewed', reason=None)


def test_verdict_rewrite_is_conditional_on_reviewed_status(repo):
    row = _create(repo)
    repo.update_task_status_if(
        row['task_id'], expected_status='draft', status='reviewed', reason=None, verdict={'result': 'Pass'}
    )

    rewritten = repo.update_task_status_if(
        row['task_id'], expected_status='reviewed', status='reviewed', reason=None, verdict={'result': 'Fail'}
    )
    assert rewritten['status'] == 'reviewed'
    assert rewritten['verdict'] == {'result': 'Fail'}

    repo.update_task_status_if(
        row['task_id'], expected_status='reviewed', status='finalized', reason='passed', final_verdict={'result': 'Fail'}
    )
    late = repo.update_task_status_if(
        row['task_id'], expected_status='reviewed', status='reviewed', reason=None, verdict={'result': 'Pass'}
    )
    assert late is None
    current = repo.get_task(row['task_id'])
    assert current['status'] == 'finalized'
    assert current['verdict'] == {'result': 'Fail'}


def test_events_are_sequenced_per_task(repo):
    row = _create(repo)
    other = _create(repo)
    repo.append_event(row['task_id'], event_type=EventType.TASK_CREATED, payload={'n': 1})
    repo.append_event(row['task_id'], event_type='Draft_Started', payload={'n': 2})
    repo.append_event(other['task_id'], event_type=EventType.TASK_CREATED, payload={})

    events = repo.list_events(row['task_id'])
    assert [e['seq'] for e in events] == [1, 2]
    assert [e['type'] for e in events] == ['task_created', 'draft_started']
    assert events[1]['payload'] == {'n': 2}
    assert [e['seq'] for e in repo.list_events(other['task_id'])] == [1]


def test_append_event_unknown_task_raises_key_error(repo):
    with pytest.raises(KeyError):
        repo.append_event('task-missing', event_type='task_created', payload={})


def test_delete_tasks_removes_task_and_events(repo):
    row = _create(repo)
    repo.append_event(row['task_id'], event_type='task_created', payload={})
    assert repo.delete_tasks([row['task_id'], row['task_id'], '', 'task-missing']) == 1
    assert repo.get_task(row['task_id']) is None
    with pytest.raises(KeyError):
        repo.list_events(row['task_id'])


def test_policy_crud_and_unlink_on_delete(repo):
    policy = repo.create_policy(mentor_id='m1', title='厳しめ', policy_text='要件3を必須とする')
    repo.create_policy(mentor_id='m2', title='other', policy_text='x')
    assert [p['policy_id'] for p in repo.list_policies(mentor_id='m1')] == [policy['policy_id']]

    updated = repo.update_policy(policy['policy_id'], title='やさしめ', policy_text='全体を見る')
    assert updated['title'] == 'やさしめ'
    assert repo.get_policy(policy['policy_id'])['policy_text'] == '全体を見る'

    task = _create(repo, policy_id=policy['policy_id'])
    assert repo.delete_policy(policy['policy_id']) is True
    assert repo.get_policy(policy['policy_id']) is None
    assert repo.get_task(task['task_id'])['policy_id'] is None
    assert repo.delete_policy(policy['policy_id']) is False


def test_update_policy_missing_raises_key_error(repo):
    with pytest.raises(KeyError):
        repo.update_policy('policy-missing', title='t', policy_text='x')


def test_unique_ids_strips_and_dedupes():
    assert unique_ids([' a ', 'a', '', None, 'b']) == ['a', 'b']
