"""Persistence helpers for screenshot artifacts and site crawl jobs."""

from __future__ import annotations

import re
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional
from urllib.parse import urlparse

from sqlalchemy import Column, delete, func, text, update
from sqlalchemy.dialects.sqlite import JSON as SQLITE_JSON
from sqlmodel import Field, Session, SQLModel, create_engine, select

from sitesnap.errors import StorageError
from sitesnap.settings import get_settings


class ArtifactStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class SiteJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATES = frozenset({SiteJobStatus.COMPLETED.value, SiteJobStatus.FAILED.value})

_ALLOWED_TRANSITIONS = {
    SiteJobStatus.PENDING.value: {SiteJobStatus.PROCESSING.value, *TERMINAL_JOB_STATES},
    SiteJobStatus.PROCESSING.value: set(TERMINAL_JOB_STATES),
}

_PATH_SLUG = re.compile(r"/+")


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so every stored time is UTC."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


class SiteJobRecord(SQLModel, table=True):
    """One sitemap-driven crawl and its running counters."""

    __tablename__ = "site_jobs"

    id: str = Field(default_factory=_new_id, primary_key=True)
    root_url: str
    sitemap_url: str | None = None
    total_pages: int = 0
    captured_count: int = 0
    failed_count: int = 0
    viewport: str = "desktop"
    full_page: bool = True
    wait_time_ms: int = 2000
    client_name: str | None = Field(default=None, index=True)
    project_name: str | None = None
    status: str = Field(default=SiteJobStatus.PENDING.value, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    expires_at: datetime = Field(index=True)


class ArtifactRecord(SQLModel, table=True):
    """Metadata for a stored screenshot."""

    __tablename__ = "artifacts"

    id: str = Field(default_factory=_new_id, primary_key=True)
    url: str
    filename: str
    bucket: str = "screenshots"
    storage_key: str
    size_bytes: int = 0
    mime_type: str = "image/png"
    viewport: str = "desktop"
    full_page: bool = True
    client_name: str | None = Field(default=None, index=True)
    project_name: str | None = Field(default=None, index=True)
    tags: list[str] = Field(default_factory=list, sa_column=Column(SQLITE_JSON))
    site_job_id: str | None = Field(default=None, foreign_key="site_jobs.id", index=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(index=True)
    downloaded_at: datetime | None = None
    status: str = Field(default=ArtifactStatus.COMPLETED.value, index=True)


@dataclass(frozen=True)
class ArtifactFilters:
    client_name: Optional[str] = None
    project_name: Optional[str] = None
    site_job_id: Optional[str] = None
    include_expired: bool = False
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class SiteJobFilters:
    client_name: Optional[str] = None
    project_name: Optional[str] = None
    status: Optional[str] = None
    include_expired: bool = False
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class StorageConfig:
    """Resolved filesystem + database locations."""

    cache_root: Path
    db_path: Path

    @classmethod
    def from_env(cls) -> StorageConfig:
        storage = get_settings().storage
        return cls(cache_root=storage.cache_root, db_path=storage.db_path)

    @property
    def blob_root(self) -> Path:
        return self.cache_root / "blobs"


def build_filename(url: str, *, captured_at: datetime | None = None) -> str:
    """``<host-with-dashes>-<path-with-dashes>-<epoch ms>.png``."""

    moment = captured_at or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    timestamp = int(moment.timestamp() * 1000)
    parsed = urlparse(url)
    if not parsed.hostname:
        return f"screenshot-{timestamp}.png"
    host = parsed.hostname.replace(".", "-")
    path = _PATH_SLUG.sub("-", parsed.path).strip("-") or "home"
    return f"{host}-{path}-{timestamp}.png"


def build_storage_key(filename: str, *, now: datetime | None = None) -> str:
    """Date-prefixed unique key: ``YYYY/MM/DD/<uuid>-<filename>``."""

    moment = now or utcnow()
    return f"{moment:%Y/%m/%d}/{uuid.uuid4()}-{filename}"


class Store:
    """Facade around the SQLite metadata tables."""

    def __init__(self, config: StorageConfig | None = None) -> None:
        self.config = config or StorageConfig.from_env()
        self.config.cache_root.mkdir(parents=True, exist_ok=True)
        self.config.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = _create_engine(self.config.db_path)
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    def close(self) -> None:
        self.engine.dispose()

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            return False
        return True

    # Artifacts -----------------------------------------------------------------

    def create_artifact(self, record: ArtifactRecord) -> ArtifactRecord:
        with self.session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def get_artifact(self, artifact_id: str) -> ArtifactRecord | None:
        with self.session() as session:
            return session.get(ArtifactRecord, artifact_id)

    def list_artifacts(
        self, filters: ArtifactFilters | None = None, *, now: datetime | None = None
    ) -> tuple[list[ArtifactRecord], int]:
        filters = filters or ArtifactFilters()
        clauses: list[Any] = []
        if filters.client_name:
            clauses.append(ArtifactRecord.client_name == filters.client_name)
        if filters.project_name:
            clauses.append(ArtifactRecord.project_name == filters.project_name)
        if filters.site_job_id:
            clauses.append(ArtifactRecord.site_job_id == filters.site_job_id)
        if not filters.include_expired:
            clauses.append(ArtifactRecord.status != ArtifactStatus.EXPIRED.value)
            clauses.append(ArtifactRecord.expires_at > (now or utcnow()))

        with self.session() as session:
            total = session.exec(select(func.count()).select_from(ArtifactRecord).where(*clauses)).one()
            statement = (
                select(ArtifactRecord)
                .where(*clauses)
                .order_by(ArtifactRecord.created_at.desc())
                .offset(filters.offset)
                .limit(filters.limit)
            )
            return list(session.exec(statement).all()), int(total)

    def update_artifact_status(self, artifact_id: str, status: str | Enum) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(ArtifactRecord)
                .where(ArtifactRecord.id == artifact_id)
                .values(status=_coerce_state(status))
            )
            return result.rowcount > 0

    def mark_downloaded(self, artifact_id: str, *, when: datetime | None = None) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(ArtifactRecord)
                .where(ArtifactRecord.id == artifact_id)
                .values(downloaded_at=when or utcnow())
            )

    def delete_artifact(self, artifact_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(delete(ArtifactRecord).where(ArtifactRecord.id == artifact_id))
            return result.rowcount > 0

    def expired_artifacts(
        self,
        limit: int = 100,
        *,
        status: str | Enum = ArtifactStatus.COMPLETED,
        now: datetime | None = None,
    ) -> list[ArtifactRecord]:
        statement = select(ArtifactRecord).where(ArtifactRecord.status == _coerce_state(status))
        if _coerce_state(status) == ArtifactStatus.COMPLETED.value:
            statement = statement.where(ArtifactRecord.expires_at < (now or utcnow()))
        statement = statement.order_by(ArtifactRecord.expires_at).limit(limit)
        with self.session() as session:
            return list(session.exec(statement).all())

    # Site jobs -----------------------------------------------------------------

    def create_site_job(self, record: SiteJobRecord) -> SiteJobRecord:
        with self.session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def get_site_job(self, job_id: str) -> SiteJobRecord | None:
        with self.session() as session:
            return session.get(SiteJobRecord, job_id)

    def list_site_jobs(
        self, filters: SiteJobFilters | None = None, *, now: datetime | None = None
    ) -> tuple[list[SiteJobRecord], int]:
        filters = filters or SiteJobFilters()
        clauses: list[Any] = []
        if filters.client_name:
            clauses.append(SiteJobRecord.client_name == filters.client_name)
        if filters.project_name:
            clauses.append(SiteJobRecord.project_name == filters.project_name)
        if filters.status:
            clauses.append(SiteJobRecord.status == _coerce_state(filters.status))
        if not filters.include_expired:
            clauses.append(SiteJobRecord.expires_at > (now or utcnow()))

        with self.session() as session:
            total = session.exec(select(func.count()).select_from(SiteJobRecord).where(*clauses)).one()
            statement = (
                select(SiteJobRecord)
                .where(*clauses)
                .order_by(SiteJobRecord.created_at.desc())
                .offset(filters.offset)
                .limit(filters.limit)
            )
            return list(session.exec(statement).all()), int(total)

    def increment_site_job(self, job_id: str, *, captured: bool) -> bool:
        """Bump one progress counter in a single UPDATE.

        The guard keeps ``captured_count + failed_count <= total_pages`` even if
        a URL were reported twice.
        """

        column = SiteJobRecord.captured_count if captured else SiteJobRecord.failed_count
        statement = (
            update(SiteJobRecord)
            .where(SiteJobRecord.id == job_id)
            .where(SiteJobRecord.captured_count + SiteJobRecord.failed_count < SiteJobRecord.total_pages)
            .values({column.key: column + 1})
        )
        with self.engine.begin() as conn:
            return conn.execute(statement).rowcount > 0

    def update_site_job_status(self, job_id: str, status: str | Enum) -> bool:
        """Move a job forward; terminal jobs and backwards moves are refused."""

        target = _coerce_state(status)
        with self.session() as session:
            record = session.get(SiteJobRecord, job_id)
            if record is None:
                raise KeyError(f"Site job {job_id} not found")
            if target == record.status:
                return False
            if target not in _ALLOWED_TRANSITIONS.get(record.status, set()):
                return False
            record.status = target
            if target in TERMINAL_JOB_STATES:
                record.completed_at = utcnow()
            session.add(record)
            session.commit()
            return True

    def complete_site_job(self, job_id: str, status: str | Enum) -> bool:
        target = _coerce_state(status)
        if target not in TERMINAL_JOB_STATES:
            raise ValueError(f"{target!r} is not a terminal site job status")
        statement = (
            update(SiteJobRecord)
            .where(SiteJobRecord.id == job_id)
            .where(SiteJobRecord.status.not_in(list(TERMINAL_JOB_STATES)))
            .values(status=target, completed_at=utcnow())
        )
        with self.engine.begin() as conn:
            return conn.execute(statement).rowcount > 0

    def artifacts_for_site_job(self, job_id: str) -> list[ArtifactRecord]:
        statement = (
            select(ArtifactRecord)
            .where(ArtifactRecord.site_job_id == job_id)
            .order_by(ArtifactRecord.url)
        )
        with self.session() as session:
            return list(session.exec(statement).all())

    def expired_site_jobs(self, limit: int = 50, *, now: datetime | None = None) -> list[SiteJobRecord]:
        statement = (
            select(SiteJobRecord)
            .where(SiteJobRecord.expires_at < (now or utcnow()))
            .where(SiteJobRecord.status != SiteJobStatus.PENDING.value)
            .order_by(SiteJobRecord.expires_at)
            .limit(limit)
        )
        with self.session() as session:
            return list(session.exec(statement).all())

    def delete_site_job(self, job_id: str) -> list[str]:
        """Delete a job and its artifact records; returns the orphaned storage keys."""

        with self.engine.begin() as conn:
            keys = [
                row[0]
                for row in conn.execute(
                    select(ArtifactRecord.storage_key).where(ArtifactRecord.site_job_id == job_id)
                )
            ]
            conn.execute(delete(ArtifactRecord).where(ArtifactRecord.site_job_id == job_id))
            conn.execute(delete(SiteJobRecord).where(SiteJobRecord.id == job_id))
        return keys


def build_store(config: StorageConfig | None = None) -> Store:
    """Convenience wrapper used by FastAPI startup hooks."""

    try:
        return Store(config=config)
    except OSError as exc:
        raise StorageError(f"Unable to open metadata store: {exc}") from exc


def _create_engine(db_path: Path):
    return create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )


def _coerce_state(value: str | Enum) -> str:
    if isinstance(value, Enum):
        return value.value
    return str(value)


def ttl_deadline(hours: int, *, now: datetime | None = None) -> datetime:
    return (now or utcnow()) + timedelta(hours=hours)


__all__ = [
    "ArtifactFilters",
    "ArtifactRecord",
    "ArtifactStatus",
    "SiteJobFilters",
    "SiteJobRecord",
    "SiteJobStatus",
    "StorageConfig",
    "Store",
    "build_filename",
    "build_storage_key",
    "build_store",
    "ttl_deadline",
    "utcnow",
]
