from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from threading import RLock
from typing import Protocol
from uuid import uuid4

from mentor_review.domain.events import EventType, normalize_event_type


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class TaskCreateRecord:
    mentor_id: str
    source_type: str
    input_snapshot: str
    source_url: str | None = None
    assignment_code: str | None = None
    policy_id: str | None = None


class TaskRepository(Protocol):
    def create_task_record(self, record: TaskCreateRecord) -> dict:
        ...

    def list_tasks(self, *, mentor_id: str, limit: int = 100) -> list[dict]:
        ...

    def get_task(self, task_id: str) -> dict | None:
        ...

    def update_task_status_if(
        self,
        task_id: str,
        *,
        expected_status: str,
        status: str,
        reason: str | None,
        verdict: dict | None = None,
        final_verdict: dict | None = None,
        slack_text: str | None = None,
    ) -> dict | None:
        """Atomically update status only if current status matches *expected_status*.

        Non-None *verdict*, *final_verdict* and *slack_text* are written in the
        same step. Returns the updated row on success, or ``None`` if the
        current status did not match (a concurrent transition already happened).
        """
        ...

    def set_last_gate_reason(self, task_id: str, *, reason: str | None) -> dict:
        ...

    def append_event(self, task_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        ...

    def list_events(self, task_id: str) -> list[dict]:
        ...

    def delete_tasks(self, task_ids: list[str]) -> int:
        ...

    def create_policy(self, *, mentor_id: str, title: str, policy_text: str) -> dict:
        ...

    def list_policies(self, *, mentor_id: str) -> list[dict]:
        ...

    def get_policy(self, policy_id: str) -> dict | None:
        ...

    def update_policy(self, policy_id: str, *, title: str, policy_text: str) -> dict:
        ...

    def delete_policy(self, policy_id: str) -> bool:
        ...


def _copy_row(row: dict) -> dict:
    out = dict(row)
    for key in ('verdict', 'final_verdict'):
        if isinstance(out.get(key), dict):
            out[key] = json.loads(json.dumps(out[key]))
    return out


class InMemoryTaskRepository:
    def __init__(self):
        self.items: dict[str, dict] = {}
        self.events: dict[str, list[dict]] = {}
        self.policies: dict[str, dict] = {}
        self._lock = RLock()

    def create_task_record(self, record: TaskCreateRecord) -> dict:
        task_id = f'task-{uuid4().hex[:12]}'
        now = _utc_now_iso()
        row = {
            'task_id': task_id,
            'mentor_id': record.mentor_id,
            'assignment_code': (str(record.assignment_code).strip() if record.assignment_code else None),
            'policy_id': (str(record.policy_id).strip() if record.policy_id else None),
            'source_type': str(record.source_type or 'text').strip().lower() or 'text',
            'source_url': (str(record.source_url).strip() if record.source_url else None),
            'input_snapshot': record.input_snapshot,
            'status': 'draft',
            'last_gate_reason': None,
            'verdict': None,
            'final_verdict': None,
            'slack_text': None,
            'created_at': now,
            'updated_at': now,
        }
        with self._lock:
            self.items[task_id] = row
            self.events[task_id] = []
            return _copy_row(row)

    def list_tasks(self, *, mentor_id: str, limit: int = 100) -> list[dict]:
        with self._lock:
            rows = [_copy_row(r) for r in self.items.values() if r.get('mentor_id') == mentor_id]
        rows.sort(key=lambda r: r.get('created_at', ''), reverse=True)
        return rows[:limit]

    def get_task(self, task_id: str) -> dict | None:
        with self._lock:
            row = self.items.get(task_id)
            return _copy_row(row) if row else None

    def update_task_status_if(
        self,
        task_id: str,
        *,
        expected_status: str,
        status: str,
        reason: str | None,
        verdict: dict | None = None,
        final_verdict: dict | None = None,
        slack_text: str | None = None,
    ) -> dict | None:
        with self._lock:
            row = self.items.get(task_id)
            if row is None:
                raise KeyError(task_id)
            if row['status'] != expected_status:
                return None
            row['status'] = status
            row['last_gate_reason'] = reason
            if verdict is not None:
                row['verdict'] = dict(verdict)
            if final_verdict is not None:
                row['final_verdict'] = dict(final_verdict)
            if slack_text is not None:
                row['slack_text'] = slack_text
            row['updated_at'] = _utc_now_iso()
            return _copy_row(row)

    def set_last_gate_reason(self, task_id: str, *, reason: str | None) -> dict:
        with self._lock:
            row = self.items.get(task_id)
            if row is None:
                raise KeyError(task_id)
            row['last_gate_reason'] = reason
            row['updated_at'] = _utc_now_iso()
            return _copy_row(row)

    def append_event(self, task_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            event = {
                'seq': len(self.events[task_id]) + 1,
                'task_id': task_id,
                'type': normalize_event_type(event_type),
                'payload': payload,
                'created_at': _utc_now_iso(),
            }
            self.events[task_id].append(event)
            return dict(event)

    def list_events(self, task_id: str) -> list[dict]:
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            return [dict(e) for e in self.events.get(task_id, [])]

    def delete_tasks(self, task_ids: list[str]) -> int:
        deleted = 0
        with self._lock:
            for task_id in unique_ids(task_ids):
                if task_id in self.items:
                    del self.items[task_id]
                    self.events.pop(task_id, None)
                    deleted += 1
        return deleted

    def create_policy(self, *, mentor_id: str, title: str, policy_text: str) -> dict:
        policy_id = f'policy-{uuid4().hex[:12]}'
        now = _utc_now_iso()
        row = {
            'policy_id': policy_id,
            'mentor_id': mentor_id,
            'title': title,
            'policy_text': policy_text,
            'created_at': now,
            'updated_at': now,
        }
        with self._lock:
            self.policies[policy_id] = row
            return dict(row)

    def list_policies(self, *, mentor_id: str) -> list[dict]:
        with self._lock:
            rows = [dict(r) for r in self.policies.values() if r.get('mentor_id') == mentor_id]
        rows.sort(key=lambda r: r.get('created_at', ''), reverse=True)
        return rows

    def get_policy(self, policy_id: str) -> dict | None:
        with self._lock:
            row = self.policies.get(policy_id)
            return dict(row) if row else None

    def update_policy(self, policy_id: str, *, title: str, policy_text: str) -> dict:
        with self._lock:
            row = self.policies.get(policy_id)
            if row is None:
                raise KeyError(policy_id)
            row['title'] = title
            row['policy_text'] = policy_text
            row['updated_at'] = _utc_now_iso()
            return dict(row)

    def delete_policy(self, policy_id: str) -> bool:
        with self._lock:
            if policy_id not in self.policies:
                return False
            del self.policies[policy_id]
            for row in self.items.values():
                if row.get('policy_id') == policy_id:
                    row['policy_id'] = None
            return True


def unique_ids(raw_ids: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for raw in raw_ids:
        text = str(raw or '').strip()
        if not text or text in seen:
            continue
        seen.add(text)
        out.append(text)
    return out
