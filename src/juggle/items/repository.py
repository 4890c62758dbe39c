"""Persistent store for sessions, work items, progress logs, and agent runs."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from juggle.agent.models import AgentLoopResult, AgentRunRecord, AgentRunStatus
from juggle.errors import (
    AgentRunInProgressError,
    ItemNotFoundError,
    JuggleError,
    SessionNotFoundError,
)
from juggle.items.models import (
    ItemState,
    ModelSize,
    Priority,
    ProgressEntry,
    SessionCounts,
    Todo,
    WorkItem,
    WorkSession,
)
from juggle.storage.alembic_runner import upgrade_head
from juggle.storage.common import build_sqlite_engine, ensure_utc, utc_now
from juggle.storage.sqlmodel_models import (
    AgentRunRow,
    ProgressEntryRow,
    WorkItemRow,
    WorkItemTagRow,
    WorkSessionRow,
)

logger = logging.getLogger(__name__)

DEFAULT_ACTIVE_RUN_STALE_AFTER = timedelta(hours=6)


class ItemRepository:
    """Item/session persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # Sessions

    def create_session(
        self,
        session_id: str,
        *,
        description: str = "",
        context: str = "",
        acceptance_criteria: Iterable[str] = (),
        default_model: ModelSize | None = None,
    ) -> WorkSession:
        normalized_id = session_id.strip()
        if not normalized_id:
            raise ValueError("Session id must be non-empty.")
        now = utc_now()
        with Session(self.engine) as session:
            if session.get(WorkSessionRow, normalized_id) is not None:
                raise JuggleError(f"Session already exists: {normalized_id}")
            row = WorkSessionRow(
                session_id=normalized_id,
                description=description,
                context=context,
                acceptance_criteria_json=json.dumps(list(acceptance_criteria)),
                default_model=default_model.value if default_model is not None else None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session(row)

    def load_session(self, session_id: str) -> WorkSession:
        """Return a session or raise ``SessionNotFoundError``."""

        with Session(self.engine) as session:
            row = session.get(WorkSessionRow, session_id)
            if row is None:
                raise SessionNotFoundError(session_id)
            return _to_session(row)

    def list_sessions(self) -> list[WorkSession]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkSessionRow).order_by(col(WorkSessionRow.created_at).asc()),
            ).all()
            return [_to_session(row) for row in rows]

    def update_session(self, work_session: WorkSession) -> WorkSession:
        with Session(self.engine) as session:
            row = session.get(WorkSessionRow, work_session.session_id)
            if row is None:
                raise SessionNotFoundError(work_session.session_id)
            row.description = work_session.description
            row.context = work_session.context
            row.acceptance_criteria_json = json.dumps(work_session.acceptance_criteria)
            row.default_model = (
                work_session.default_model.value if work_session.default_model else None
            )
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session(row)

    # Items

    def add_item(self, item: WorkItem) -> WorkItem:
        with Session(self.engine) as session:
            if session.get(WorkItemRow, item.item_id) is not None:
                raise JuggleError(f"Item already exists: {item.item_id}")
            session.add(_to_item_row(item))
            session.flush()
            _replace_tags(session, item_id=item.item_id, tags=item.tags)
            session.commit()
        return self.get_item(item.item_id)

    def update_item(self, item: WorkItem) -> WorkItem:
        with Session(self.engine) as session:
            row = session.get(WorkItemRow, item.item_id)
            if row is None:
                raise ItemNotFoundError(item.item_id)
            fresh = _to_item_row(item)
            for attribute in _ITEM_ROW_MUTABLE_FIELDS:
                setattr(row, attribute, getattr(fresh, attribute))
            session.add(row)
            _replace_tags(session, item_id=item.item_id, tags=item.tags)
            session.commit()
        return self.get_item(item.item_id)

    def get_item(self, item_id: str) -> WorkItem:
        """Resolve an item by full id or by its unique short-id suffix."""

        with Session(self.engine) as session:
            row = session.get(WorkItemRow, item_id)
            if row is None:
                suffix = col(WorkItemRow.item_id).endswith(f"-{item_id}", autoescape=True)
                candidates = session.exec(select(WorkItemRow).where(suffix)).all()
                if not candidates:
                    raise ItemNotFoundError(item_id)
                if len(candidates) > 1:
                    raise ItemNotFoundError(item_id, ambiguous=True)
                row = candidates[0]
            tags = _load_tags(session, [row.item_id])
            return _to_item(row, tags.get(row.item_id, []))

    def list_items(
        self,
        *,
        session_id: str | None = None,
        states: Iterable[ItemState] | None = None,
    ) -> list[WorkItem]:
        """List items, optionally only those linked to a session tag."""

        with Session(self.engine) as session:
            query = select(WorkItemRow)
            if session_id is not None:
                query = query.join(
                    WorkItemTagRow,
                    col(WorkItemTagRow.item_id) == col(WorkItemRow.item_id),
                ).where(WorkItemTagRow.tag == session_id)
            if states is not None:
                query = query.where(col(WorkItemRow.state).in_([state.value for state in states]))
            rows = session.exec(query).all()
            tags = _load_tags(session, [row.item_id for row in rows])
            items = [_to_item(row, tags.get(row.item_id, [])) for row in rows]
        items.sort(key=lambda item: (-item.priority.weight, item.created_at))
        return items

    def session_counts(self, session_id: str) -> SessionCounts:
        """Count terminal/complete/blocked/total items for a session.

        Never raises: storage errors are logged and reported as all zeros.
        """

        try:
            with Session(self.engine) as session:
                states = session.exec(
                    select(WorkItemRow.state)
                    .join(
                        WorkItemTagRow,
                        col(WorkItemTagRow.item_id) == col(WorkItemRow.item_id),
                    )
                    .where(WorkItemTagRow.tag == session_id),
                ).all()
            return SessionCounts.from_states([ItemState(value) for value in states])
        except (SQLAlchemyError, ValueError) as error:
            logger.warning("Failed to count items for session %s: %s", session_id, error)
            return SessionCounts()

    # Progress log

    def append_progress_line(self, session_id: str, text: str) -> ProgressEntry:
        with Session(self.engine) as session:
            row = ProgressEntryRow(session_id=session_id, text=text.rstrip(), created_at=utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_progress(row)

    def list_progress(self, session_id: str, *, limit: int | None = None) -> list[ProgressEntry]:
        """Return progress entries oldest first, keeping only the last ``limit``."""

        with Session(self.engine) as session:
            query = (
                select(ProgressEntryRow)
                .where(ProgressEntryRow.session_id == session_id)
                .order_by(col(ProgressEntryRow.entry_id).desc())
            )
            if limit is not None:
                query = query.limit(limit)
            rows = list(session.exec(query).all())
        rows.reverse()
        return [_to_progress(row) for row in rows]

    # Agent runs

    def start_agent_run(
        self,
        *,
        session_id: str,
        project_dir: Path,
        max_iterations: int,
        output_path: Path | None = None,
        stale_after: timedelta = DEFAULT_ACTIVE_RUN_STALE_AFTER,
    ) -> AgentRunRecord:
        """Record a new running agent run, refusing a second active run per session."""

        if stale_after.total_seconds() <= 0:
            raise ValueError("stale_after must be > 0")

        while True:
            run_id = f"{utc_now():%Y%m%d%H%M%S}-{uuid4().hex[:8]}"
            with Session(self.engine) as session:
                now = utc_now()
                row = AgentRunRow(
                    run_id=run_id,
                    session_id=session_id,
                    project_dir=str(project_dir),
                    status=AgentRunStatus.RUNNING.value,
                    max_iterations=max_iterations,
                    output_path=str(output_path) if output_path is not None else None,
                    started_at=now,
                    heartbeat_at=now,
                )
                session.add(row)
                try:
                    session.commit()
                    session.refresh(row)
                    return _to_run_record(row)
                except IntegrityError as error:
                    session.rollback()
                    active_run = session.exec(
                        select(AgentRunRow).where(
                            AgentRunRow.session_id == session_id,
                            AgentRunRow.status == AgentRunStatus.RUNNING.value,
                        ),
                    ).one_or_none()
                    if active_run is None:
                        raise

                    heartbeat_at = ensure_utc(active_run.heartbeat_at or active_run.started_at)
                    if utc_now() - heartbeat_at > stale_after:
                        reclaimed_at = utc_now()
                        active_run.status = AgentRunStatus.ERROR.value
                        active_run.ended_at = reclaimed_at
                        active_run.error_message = (
                            "Auto-recovered stale running agent run after crash/interruption."
                        )
                        session.add(active_run)
                        session.commit()
                        logger.warning(
                            "Recovered stale agent run and starting a new one "
                            "(session=%s stale_run_id=%s stale_heartbeat_at=%s).",
                            session_id,
                            active_run.run_id,
                            heartbeat_at.isoformat(),
                        )
                        continue

                    raise AgentRunInProgressError(
                        session_id,
                        run_id=active_run.run_id,
                        heartbeat_at=heartbeat_at.isoformat(),
                    ) from error

    def touch_agent_run(self, run_id: str) -> None:
        with Session(self.engine) as session:
            row = session.get(AgentRunRow, run_id)
            if row is None or row.status != AgentRunStatus.RUNNING.value:
                return
            row.heartbeat_at = utc_now()
            session.add(row)
            session.commit()

    def finish_agent_run(
        self,
        run_id: str,
        *,
        result: AgentLoopResult | None,
        error_message: str | None = None,
    ) -> AgentRunRecord:
        """Close a running record with the loop outcome, or as an error."""

        with Session(self.engine) as session:
            row = session.get(AgentRunRow, run_id)
            if row is None:
                raise JuggleError(f"Agent run not found: {run_id}")
            if result is None or error_message is not None:
                row.status = AgentRunStatus.ERROR.value
                row.error_message = error_message or "Agent run ended without a result."
            else:
                row.status = AgentRunStatus(result.outcome.value).value
            if result is not None:
                row.iterations = result.iterations
                row.blocked_reason = result.blocked_reason
                row.timeout_message = result.timeout_message
                row.items_complete = result.items_complete
                row.items_blocked = result.items_blocked
                row.items_total = result.items_total
                row.total_wait_seconds = result.total_wait_seconds
            row.ended_at = (result.ended_at if result is not None else None) or utc_now()
            row.heartbeat_at = row.ended_at
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_record(row)

    def list_agent_runs(
        self,
        *,
        session_id: str | None = None,
        limit: int = 20,
    ) -> list[AgentRunRecord]:
        """Most recent agent runs first."""

        with Session(self.engine) as session:
            query = select(AgentRunRow)
            if session_id is not None:
                query = query.where(AgentRunRow.session_id == session_id)
            rows = session.exec(
                query.order_by(col(AgentRunRow.started_at).desc()).limit(limit),
            ).all()
            return [_to_run_record(row) for row in rows]


_ITEM_ROW_MUTABLE_FIELDS = (
    "title",
    "priority",
    "state",
    "blocked_reason",
    "completion_note",
    "model_size",
    "todos_json",
    "acceptance_criteria_json",
    "update_count",
    "started_at",
    "last_activity_at",
    "completed_at",
)


def _replace_tags(session: Session, *, item_id: str, tags: list[str]) -> None:
    session.execute(sa_delete(WorkItemTagRow).where(col(WorkItemTagRow.item_id) == item_id))
    seen: set[str] = set()
    for position, tag in enumerate(tags):
        if tag in seen:
            continue
        seen.add(tag)
        session.add(WorkItemTagRow(item_id=item_id, tag=tag, position=position))


def _load_tags(session: Session, item_ids: list[str]) -> dict[str, list[str]]:
    if not item_ids:
        return {}
    rows = session.exec(
        select(WorkItemTagRow)
        .where(col(WorkItemTagRow.item_id).in_(item_ids))
        .order_by(col(WorkItemTagRow.item_id), col(WorkItemTagRow.position)),
    ).all()
    tags: dict[str, list[str]] = {}
    for row in rows:
        tags.setdefault(row.item_id, []).append(row.tag)
    return tags


def _to_session(row: WorkSessionRow) -> WorkSession:
    return WorkSession(
        session_id=row.session_id,
        description=row.description,
        context=row.context,
        acceptance_criteria=list(json.loads(row.acceptance_criteria_json or "[]")),
        default_model=ModelSize(row.default_model) if row.default_model else None,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _to_item_row(item: WorkItem) -> WorkItemRow:
    return WorkItemRow(
        item_id=item.item_id,
        title=item.title,
        priority=item.priority.value,
        state=item.state.value,
        blocked_reason=item.blocked_reason,
        completion_note=item.completion_note,
        model_size=item.model_size.value if item.model_size is not None else None,
        todos_json=json.dumps([todo.to_dict() for todo in item.todos]),
        acceptance_criteria_json=json.dumps(item.acceptance_criteria),
        update_count=item.update_count,
        created_at=item.created_at,
        started_at=item.started_at,
        last_activity_at=item.last_activity_at,
        completed_at=item.completed_at,
    )


def _to_item(row: WorkItemRow, tags: list[str]) -> WorkItem:
    return WorkItem(
        item_id=row.item_id,
        title=row.title,
        priority=Priority(row.priority),
        state=ItemState(row.state),
        tags=list(tags),
        todos=[Todo.from_dict(payload) for payload in json.loads(row.todos_json or "[]")],
        acceptance_criteria=list(json.loads(row.acceptance_criteria_json or "[]")),
        blocked_reason=row.blocked_reason,
        completion_note=row.completion_note,
        model_size=ModelSize(row.model_size) if row.model_size else None,
        created_at=ensure_utc(row.created_at),
        started_at=ensure_utc(row.started_at) if row.started_at is not None else None,
        last_activity_at=ensure_utc(row.last_activity_at),
        completed_at=ensure_utc(row.completed_at) if row.completed_at is not None else None,
        update_count=row.update_count,
    )


def _to_progress(row: ProgressEntryRow) -> ProgressEntry:
    return ProgressEntry(
        session_id=row.session_id,
        text=row.text,
        created_at=ensure_utc(row.created_at),
    )


def _to_run_record(row: AgentRunRow) -> AgentRunRecord:
    return AgentRunRecord(
        run_id=row.run_id,
        session_id=row.session_id,
        project_dir=row.project_dir,
        status=AgentRunStatus(row.status),
        max_iterations=row.max_iterations,
        iterations=row.iterations,
        blocked_reason=row.blocked_reason,
        timeout_message=row.timeout_message,
        error_message=row.error_message,
        items_complete=row.items_complete,
        items_blocked=row.items_blocked,
        items_total=row.items_total,
        total_wait_seconds=row.total_wait_seconds,
        output_path=row.output_path,
        started_at=ensure_utc(row.started_at),
        heartbeat_at=ensure_utc(row.heartbeat_at) if row.heartbeat_at is not None else None,
        ended_at=ensure_utc(row.ended_at) if row.ended_at is not None else None,
    )
