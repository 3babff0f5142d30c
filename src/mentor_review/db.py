from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import time
from typing import Callable, Iterator, TypeVar
from uuid import uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker

from mentor_review.domain.events import EventType, normalize_event_type
from mentor_review.repository import TaskCreateRecord, unique_ids

T = TypeVar('T')


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def _encode_json(value: dict | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def _decode_json(raw: str | None) -> dict | None:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class Base(DeclarativeBase):
    pass


class ReviewTaskEntity(Base):
    __tablename__ = 'review_tasks'

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    mentor_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    assignment_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    policy_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_type: Mapped[str] = mapped_column(String(16), nullable=False)
    source_url: Mapped[str | None] = mapped_column(Text(), nullable=True)
    input_snapshot: Mapped[str] = mapped_column(Text(), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    last_gate_reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
    verdict_json: Mapped[str | None] = mapped_column(Text(), nullable=True)
    final_verdict_json: Mapped[str | None] = mapped_column(Text(), nullable=True)
    slack_text: Mapped[str | None] = mapped_column(Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    events: Mapped[list['TaskEventEntity']] = relationship(
        'TaskEventEntity', back_populates='task', cascade='all,delete-orphan'
    )


class TaskEventEntity(Base):
    __tablename__ = 'task_events'
    __table_args__ = (
        UniqueConstraint('task_id', 'seq', name='uq_task_events_task_id_seq'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(64), ForeignKey('review_tasks.task_id'), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer(), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    task: Mapped[ReviewTaskEntity] = relationship('ReviewTaskEntity', back_populates='events')


class TaskEventCounterEntity(Base):
    __tablename__ = 'task_event_counters'

    task_id: Mapped[str] = mapped_column(String(64), ForeignKey('review_tasks.task_id'), primary_key=True)
    next_seq: Mapped[int] = mapped_column(Integer(), nullable=False)


class EvaluationPolicyEntity(Base):
    __tablename__ = 'evaluation_policies'

    policy_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    mentor_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    policy_text: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class SqlTaskRepository:
    def __init__(self, db: Database):
        self.db = db

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def _retry_on_lock(self, op_name: str, fn: Callable[[Session], T]) -> T:
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                with self.db.session() as session:
                    return fn(session)
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError(f'{op_name}_retry_exhausted')

    def create_task_record(self, record: TaskCreateRecord) -> dict:
        now = datetime.now(timezone.utc)
        task = ReviewTaskEntity(
            task_id=f'task-{uuid4().hex[:12]}',
            mentor_id=record.mentor_id,
            assignment_code=(str(record.assignment_code).strip() if record.assignment_code else None),
            policy_id=(str(record.policy_id).strip() if record.policy_id else None),
            source_type=str(record.source_type or 'text').strip().lower() or 'text',
            source_url=(str(record.source_url).strip() if record.source_url else None),
            input_snapshot=record.input_snapshot,
            status='draft',
            last_gate_reason=None,
            verdict_json=None,
            final_verdict_json=None,
            slack_text=None,
            created_at=now,
            updated_at=now,
        )

        def _op(session: Session) -> dict:
            session.add(task)
            session.flush()
            return self._task_to_dict(task)

        return self._retry_on_lock('create_task_record', _op)

    def list_tasks(self, *, mentor_id: str, limit: int = 100) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(ReviewTaskEntity)
                .where(ReviewTaskEntity.mentor_id == mentor_id)
                .order_by(ReviewTaskEntity.created_at.desc())
                .limit(limit)
            ).scalars().all()
            return [self._task_to_dict(r) for r in rows]

    def get_task(self, task_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(ReviewTaskEntity, task_id)
            if row is None:
                return None
            return self._task_to_dict(row)

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
        def _op(session: Session) -> dict | None:
            values: dict[str, object] = {
                'status': status,
                'last_gate_reason': reason,
                'updated_at': datetime.now(timezone.utc),
            }
            if verdict is not None:
                values['verdict_json'] = _encode_json(verdict)
            if final_verdict is not None:
                values['final_verdict_json'] = _encode_json(final_verdict)
            if slack_text is not None:
                values['slack_text'] = slack_text

            result = session.execute(
                update(ReviewTaskEntity)
                .where(
                    ReviewTaskEntity.task_id == task_id,
                    ReviewTaskEntity.status == expected_status,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.flush()
            if int(result.rowcount or 0) == 0:
                existing = session.get(ReviewTaskEntity, task_id)
                if existing is None:
                    raise KeyError(task_id)
                return None

            row = session.get(ReviewTaskEntity, task_id, populate_existing=True)
            if row is None:
                raise KeyError(task_id)
            return self._task_to_dict(row)

        return self._retry_on_lock('update_task_status_if', _op)

    def set_last_gate_reason(self, task_id: str, *, reason: str | None) -> dict:
        def _op(session: Session) -> dict:
            row = session.get(ReviewTaskEntity, task_id)
            if row is None:
                raise KeyError(task_id)
            row.last_gate_reason = reason
            row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.flush()
            return self._task_to_dict(row)

        return self._retry_on_lock('set_last_gate_reason', _op)

    def append_event(self, task_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        now = datetime.now(timezone.utc)
        normalized_type = normalize_event_type(event_type)
        max_attempts = max(3, self._sqlite_lock_retry_attempts())
        for attempt in range(max_attempts):
            try:
                with self.db.session() as session:
                    task = session.get(ReviewTaskEntity, task_id)
                    if task is None:
                        raise KeyError(task_id)

                    next_seq = self._reserve_next_event_seq(session, task_id)
                    event = TaskEventEntity(
                        task_id=task_id,
                        seq=next_seq,
                        event_type=normalized_type,
                        payload_json=json.dumps(payload, ensure_ascii=False),
                        created_at=now,
                    )
                    session.add(event)
                    session.flush()
                    return self._event_to_dict(event)
            except IntegrityError:
                if attempt + 1 >= max_attempts:
                    raise
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt + 1 >= max_attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt + 1))
        raise RuntimeError('append_event_retry_exhausted')

    def list_events(self, task_id: str) -> list[dict]:
        with self.db.session() as session:
            task = session.get(ReviewTaskEntity, task_id)
            if task is None:
                raise KeyError(task_id)
            rows = session.execute(
                select(TaskEventEntity)
                .where(TaskEventEntity.task_id == task_id)
                .order_by(TaskEventEntity.seq.asc())
            ).scalars().all()
            return [self._event_to_dict(r) for r in rows]

    def delete_tasks(self, task_ids: list[str]) -> int:
        ids = unique_ids(task_ids)
        if not ids:
            return 0

        deleted = 0
        with self.db.session() as session:
            session.execute(
                delete(TaskEventCounterEntity).where(TaskEventCounterEntity.task_id.in_(ids))
            )
            rows = session.execute(
                select(ReviewTaskEntity).where(ReviewTaskEntity.task_id.in_(ids))
            ).scalars().all()
            for row in rows:
                session.delete(row)
                deleted += 1
            session.flush()
        return deleted

    def create_policy(self, *, mentor_id: str, title: str, policy_text: str) -> dict:
        now = datetime.now(timezone.utc)
        policy = EvaluationPolicyEntity(
            policy_id=f'policy-{uuid4().hex[:12]}',
            mentor_id=mentor_id,
            title=title,
            policy_text=policy_text,
            created_at=now,
            updated_at=now,
        )

        def _op(session: Session) -> dict:
            session.add(policy)
            session.flush()
            return self._policy_to_dict(policy)

        return self._retry_on_lock('create_policy', _op)

    def list_policies(self, *, mentor_id: str) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(EvaluationPolicyEntity)
                .where(EvaluationPolicyEntity.mentor_id == mentor_id)
                .order_by(EvaluationPolicyEntity.created_at.desc())
            ).scalars().all()
            return [self._policy_to_dict(r) for r in rows]

    def get_policy(self, policy_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(EvaluationPolicyEntity, policy_id)
            if row is None:
                return None
            return self._policy_to_dict(row)

    def update_policy(self, policy_id: str, *, title: str, policy_text: str) -> dict:
        def _op(session: Session) -> dict:
            row = session.get(EvaluationPolicyEntity, policy_id)
            if row is None:
                raise KeyError(policy_id)
            row.title = title
            row.policy_text = policy_text
            row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.flush()
            return self._policy_to_dict(row)

        return self._retry_on_lock('update_policy', _op)

    def delete_policy(self, policy_id: str) -> bool:
        def _op(session: Session) -> bool:
            row = session.get(EvaluationPolicyEntity, policy_id)
            if row is None:
                return False
            session.execute(
                update(ReviewTaskEntity)
                .where(ReviewTaskEntity.policy_id == policy_id)
                .values(policy_id=None)
                .execution_options(synchronize_session=False)
            )
            session.delete(row)
            session.flush()
            return True

        return self._retry_on_lock('delete_policy', _op)

    @staticmethod
    def _reserve_next_event_seq(session: Session, task_id: str) -> int:
        initial_next_seq = (
            select((func.coalesce(func.max(TaskEventEntity.seq), 0) + 2))
            .where(TaskEventEntity.task_id == task_id)
            .scalar_subquery()
        )
        bind = session.get_bind()
        dialect_name = bind.dialect.name if bind is not None else ''

        if dialect_name in {'sqlite', 'postgresql'}:
            insert_fn = sqlite_insert if dialect_name == 'sqlite' else pg_insert
            stmt = (
                insert_fn(TaskEventCounterEntity)
                .values(task_id=task_id, next_seq=initial_next_seq)
                .on_conflict_do_update(
                    index_elements=[TaskEventCounterEntity.task_id],
                    set_={'next_seq': TaskEventCounterEntity.next_seq + 1},
                )
                .returning(TaskEventCounterEntity.next_seq)
            )
            reserved_next_seq = int(session.execute(stmt).scalar_one())
            return reserved_next_seq - 1

        counter = session.get(TaskEventCounterEntity, task_id, with_for_update=True)
        if counter is None:
            max_seq = int(
                session.execute(
                    select(func.coalesce(func.max(TaskEventEntity.seq), 0))
                    .where(TaskEventEntity.task_id == task_id)
                ).scalar_one()
            )
            assigned_seq = max_seq + 1
            session.add(TaskEventCounterEntity(task_id=task_id, next_seq=assigned_seq + 1))
            session.flush()
            return assigned_seq

        assigned_seq = int(counter.next_seq)
        counter.next_seq = assigned_seq + 1
        session.add(counter)
        session.flush()
        return assigned_seq

    @staticmethod
    def _task_to_dict(row: ReviewTaskEntity) -> dict:
        return {
            'task_id': row.task_id,
            'mentor_id': row.mentor_id,
            'assignment_code': row.assignment_code,
            'policy_id': row.policy_id,
            'source_type': row.source_type,
            'source_url': row.source_url,
            'input_snapshot': row.input_snapshot,
            'status': row.status,
            'last_gate_reason': row.last_gate_reason,
            'verdict': _decode_json(row.verdict_json),
            'final_verdict': _decode_json(row.final_verdict_json),
            'slack_text': row.slack_text,
            'created_at': _iso_utc(row.created_at),
            'updated_at': _iso_utc(row.updated_at),
        }

    @staticmethod
    def _event_to_dict(row: TaskEventEntity) -> dict:
        return {
            'id': row.id,
            'task_id': row.task_id,
            'seq': row.seq,
            'type': row.event_type,
            'payload': json.loads(row.payload_json),
            'created_at': _iso_utc(row.created_at),
        }

    @staticmethod
    def _policy_to_dict(row: EvaluationPolicyEntity) -> dict:
        return {
            'policy_id': row.policy_id,
            'mentor_id': row.mentor_id,
            'title': row.title,
            'policy_text': row.policy_text,
            'created_at': _iso_utc(row.created_at),
            'updated_at': _iso_utc(row.updated_at),
        }
