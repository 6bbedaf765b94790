from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from stageflow.app.models import JobCandidateStage, QueuedEmailStatus, QueuedStageEmailRecord


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlitePersistence:
    """
    Snapshot store for the in-memory state. Works with SQLite and PostgreSQL URLs.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.state_snapshots = Table(
            "state_snapshots",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("payload_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.queued_stage_emails = Table(
            "queued_stage_emails",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("candidate_id", String(64), nullable=False, index=True),
            Column("from_stage", String(32), nullable=True),
            Column("to_stage", String(32), nullable=False),
            Column("template_id", String(64), nullable=True),
            Column("delay_minutes", Integer, nullable=False),
            Column("scheduled_for_utc", DateTime, nullable=False),
            Column("skip_auto_email", Boolean, nullable=False),
            Column("status", String(16), nullable=False, index=True),
            Column("message_id", String(255), nullable=True),
            Column("error", Text, nullable=True),
            Column("processed_at_utc", DateTime, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def save_snapshot(self, payload: dict) -> None:
        with self._lock:
            serialized = json.dumps(payload)
            now = datetime.utcnow()
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.state_snapshots.c.id).where(self.state_snapshots.c.id == "default")
                ).first()
                if existing:
                    conn.execute(
                        self.state_snapshots.update()
                        .where(self.state_snapshots.c.id == "default")
                        .values(payload_json=serialized, updated_at_utc=now)
                    )
                else:
                    conn.execute(
                        self.state_snapshots.insert().values(
                            id="default",
                            payload_json=serialized,
                            updated_at_utc=now,
                        )
                    )

    def load_snapshot(self) -> Optional[dict]:
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.state_snapshots.c.payload_json).where(
                        self.state_snapshots.c.id == "default"
                    )
                ).first()
            if not row:
                return None
            return json.loads(row[0])

    def upsert_queued_email(self, record: QueuedStageEmailRecord) -> None:
        with self._lock:
            payload = {
                "candidate_id": record.candidate_id,
                "from_stage": record.from_stage.value if record.from_stage else None,
                "to_stage": record.to_stage.value,
                "template_id": record.template_id,
                "delay_minutes": record.delay_minutes,
                "scheduled_for_utc": record.scheduled_for_utc,
                "skip_auto_email": record.skip_auto_email,
                "status": record.status.value,
                "message_id": record.message_id,
                "error": record.error,
                "processed_at_utc": record.processed_at_utc,
                "created_at_utc": record.created_at_utc,
            }
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.queued_stage_emails.c.id).where(
                        self.queued_stage_emails.c.id == record.id
                    )
                ).first()
                if existing:
                    conn.execute(
                        self.queued_stage_emails.update()
                        .where(self.queued_stage_emails.c.id == record.id)
                        .values(**payload)
                    )
                else:
                    conn.execute(
                        self.queued_stage_emails.insert().values(id=record.id, **payload)
                    )

    def list_queued_emails(
        self,
        *,
        status: Optional[QueuedEmailStatus] = None,
        limit: int = 100,
    ) -> list[QueuedStageEmailRecord]:
        safe_limit = max(1, min(limit, 500))
        table = self.queued_stage_emails
        query = select(table).order_by(table.c.scheduled_for_utc.desc()).limit(safe_limit)
        if status is not None:
            query = query.where(table.c.status == status.value)
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()

        output: list[QueuedStageEmailRecord] = []
        for row in rows:
            output.append(
                QueuedStageEmailRecord(
                    id=row.id,
                    candidate_id=row.candidate_id,
                    from_stage=JobCandidateStage(row.from_stage) if row.from_stage else None,
                    to_stage=JobCandidateStage(row.to_stage),
                    template_id=row.template_id,
                    delay_minutes=row.delay_minutes,
                    scheduled_for_utc=row.scheduled_for_utc,
                    skip_auto_email=bool(row.skip_auto_email),
                    status=QueuedEmailStatus(row.status),
                    message_id=row.message_id,
                    error=row.error,
                    processed_at_utc=row.processed_at_utc,
                    created_at_utc=row.created_at_utc or datetime.utcnow(),
                )
            )
        return output
