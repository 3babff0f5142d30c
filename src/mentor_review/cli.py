from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
import sys

import httpx


def _add_verdict_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--verdict-file', default='', help='JSON file holding the verdict object')
    parser.add_argument('--result', choices=['Pass', 'Fail', 'Review'], default=None, help='Verdict outcome')
    parser.add_argument('--task-name', default='', help='Assignment label shown in the message')
    parser.add_argument('--good', action='append', default=[], help='Good point (repeatable, max 4)')
    parser.add_argument('--improve', action='append', default=[], help='Improvement (repeatable, max 4)')
    parser.add_argument('--fail-reason', action='append', default=[], help='Fail reason (repeatable, max 4)')
    parser.add_argument('--issue', default='', help='Submission issue text for Review')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='mentor-review', description='Review course submissions and produce Slack feedback')
    parser.add_argument(
        '--api-base',
        default=os.getenv('MENTOR_REVIEW_API_BASE', 'http://127.0.0.1:8000'),
        help='mentor-review API base URL',
    )
    parser.add_argument('--mentor', default=os.getenv('MENTOR_REVIEW_MENTOR_ID', 'local'), help='Mentor id sent as x-mentor-id')
    parser.add_argument('--token', default=os.getenv('MENTOR_REVIEW_API_TOKEN', ''), help='Optional API token')

    sub = parser.add_subparsers(dest='command', required=True)

    create = sub.add_parser('create', help='Create a review task')
    source = create.add_mutually_exclusive_group(required=True)
    source.add_argument('--text', default=None, help='Submission text')
    source.add_argument('--input-file', default=None, help='File holding the submission text ("-" for stdin)')
    create.add_argument('--source-type', default='text', choices=['colab', 'docs', 'text', 'other'])
    create.add_argument('--source-url', default='', help='Optional link to the submission')
    create.add_argument('--assignment', default='', help='Assignment code, e.g. 9-6')
    create.add_argument('--policy', default='', help='Evaluation policy id')

    tasks = sub.add_parser('tasks', help='List tasks')
    tasks.add_argument('--limit', type=int, default=20)

    show = sub.add_parser('show', help='Show one task')
    show.add_argument('task_id', help='Task id')
    show.add_argument('--slack', action='store_true', help='Print only the finalized Slack text')

    draft = sub.add_parser('draft', help='Generate an AI draft verdict')
    draft.add_argument('task_id', help='Task id')

    edit = sub.add_parser('edit', help='Save an edited verdict')
    edit.add_argument('task_id', help='Task id')
    _add_verdict_arguments(edit)

    preview = sub.add_parser('preview', help='Render a verdict without saving it')
    preview.add_argument('task_id', help='Task id')
    _add_verdict_arguments(preview)

    finalize = sub.add_parser('finalize', help='Finalize a task and print the Slack text')
    finalize.add_argument('task_id', help='Task id')
    _add_verdict_arguments(finalize)

    delete = sub.add_parser('delete', help='Delete a task')
    delete.add_argument('task_id', help='Task id')

    events = sub.add_parser('events', help='List task events')
    events.add_argument('task_id', help='Task id')

    sub.add_parser('stats', help='Show dashboard counts and recent tasks')
    sub.add_parser('assignments', help='List assignments')
    sub.add_parser('policies', help='List evaluation policies')

    policy_add = sub.add_parser('policy-add', help='Create an evaluation policy')
    policy_add.add_argument('--title', required=True)
    policy_text = policy_add.add_mutually_exclusive_group(required=True)
    policy_text.add_argument('--text', default=None, help='Policy text')
    policy_text.add_argument('--text-file', default=None, help='File holding the policy text')

    policy_delete = sub.add_parser('policy-delete', help='Delete an evaluation policy')
    policy_delete.add_argument('policy_id', help='Policy id')

    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _read_text(path: str) -> str:
    if path == '-':
        return sys.stdin.read()
    return Path(path).read_text(encoding='utf-8')


def _verdict_from_args(args: argparse.Namespace) -> dict | None:
    verdict_file = str(getattr(args, 'verdict_file', '') or '').strip()
    if verdict_file:
        loaded = json.loads(_read_text(verdict_file))
        if not isinstance(loaded, dict):
            raise ValueError('--verdict-file must hold a JSON object')
        return loaded
    if not getattr(args, 'result', None):
        return None
    return {
        'result': args.result,
        'task_name': args.task_name,
        'good_points': list(args.good),
        'improvements': list(args.improve),
        'fail_reasons': list(args.fail_reason),
        'submission_issue': (args.issue.strip() or None),
    }


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')
    headers = {'x-mentor-id': args.mentor}
    if args.token:
        headers['x-mentor-review-token'] = args.token

    try:
        verdict = _verdict_from_args(args)
    except (OSError, ValueError) as exc:
        parser.error(str(exc))
        return 2

    with httpx.Client(timeout=120, headers=headers) as client:
        if args.command == 'create':
            try:
                text = args.text if args.text is not None else _read_text(args.input_file)
            except OSError as exc:
                parser.error(str(exc))
                return 2
            response = client.post(
                f'{base}/api/tasks',
                json={
                    'input_snapshot': text,
                    'source_type': args.source_type,
                    'source_url': (args.source_url.strip() or None),
                    'assignment_code': (args.assignment.strip() or None),
                    'policy_id': (args.policy.strip() or None),
                },
            )
        elif args.command == 'tasks':
            response = client.get(f'{base}/api/tasks', params={'limit': int(args.limit)})
        elif args.command == 'show':
            response = client.get(f'{base}/api/tasks/{args.task_id}')
        elif args.command == 'draft':
            response = client.post(f'{base}/api/tasks/{args.task_id}/draft')
        elif args.command == 'edit':
            if verdict is None:
                parser.error('edit requires --verdict-file or --result')
                return 2
            response = client.put(f'{base}/api/tasks/{args.task_id}/verdict', json=verdict)
        elif args.command == 'preview':
            response = client.post(f'{base}/api/tasks/{args.task_id}/preview', json={'verdict': verdict})
        elif args.command == 'finalize':
            response = client.post(f'{base}/api/tasks/{args.task_id}/finalize', json={'verdict': verdict})
        elif args.command == 'delete':
            response = client.delete(f'{base}/api/tasks/{args.task_id}')
        elif args.command == 'events':
            response = client.get(f'{base}/api/tasks/{args.task_id}/events')
        elif args.command == 'stats':
            response = client.get(f'{base}/api/stats')
        elif args.command == 'assignments':
            response = client.get(f'{base}/api/assignments')
        elif args.command == 'policies':
            response = client.get(f'{base}/api/policies')
        elif args.command == 'policy-add':
            try:
                policy_text = args.text if args.text is not None else _read_text(args.text_file)
            except OSError as exc:
                parser.error(str(exc))
                return 2
            response = client.post(
                f'{base}/api/policies',
                json={'title': args.title, 'policy_text': policy_text},
            )
        elif args.command == 'policy-delete':
            response = client.delete(f'{base}/api/policies/{args.policy_id}')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    if response.status_code == 204:
        target = getattr(args, 'task_id', None) or getattr(args, 'policy_id', None)
        _print_json({'deleted': target})
        return 0

    payload = response.json()
    if args.command == 'finalize' or (args.command == 'show' and args.slack):
        slack_text = payload.get('slack_text')
        if not slack_text:
            print('task has no finalized Slack text', file=sys.stderr)
            return 1
        print(slack_text)
        return 0

    _print_json(payload)
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
