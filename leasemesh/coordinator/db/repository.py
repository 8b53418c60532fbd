import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, create_engine, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from db.migrate import apply_migrations
from db.orm import JobRecord
from lease.errors import ClaimRace, StoreUnavailable
from lease.store import ClaimFilter
from models import OWNED_STATUSES, TERMINAL_STATUSES, Job, JobStatus

_OWNED_VALUES = [status.value for status in OWNED_STATUSES]
_TERMINAL_VALUES = [status.value for status in TERMINAL_STATUSES]
_CANCEL_RETRIES = 3

# Job attributes that try_finalize/try_reclaim callers may set directly.
_WRITABLE_FIELDS = {
    "attempt_count",
    "last_error",
    "run_at",
    "completed_at",
    "progress",
    "current_step",
    "total_steps",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _encode_json(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"), default=str)


def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in fields.items():
        if key == "result":
            values["result_json"] = _encode_json(value)
        elif key in _WRITABLE_FIELDS:
            values[key] = _as_utc(value) if isinstance(value, datetime) else value
        else:
            raise ValueError(f"Field '{key}' cannot be written on release")
    return values


class JobRepository:
    """SQLAlchemy job record store with compare-and-set writes.

    Every state change is a single ``UPDATE ... WHERE`` whose predicate
    restates what the caller believes about the row; ``rowcount`` tells
    whether that belief still held.
    """

    def __init__(self, db_url: str) -> None:
        apply_migrations(db_url)
        connect_args: dict[str, object] = {}
        if db_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        self._engine = create_engine(db_url, future=True, connect_args=connect_args)
        self._session_factory = sessionmaker(
            bind=self._engine, autoflush=False, expire_on_commit=False
        )

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            raise StoreUnavailable(operation, str(exc)) from exc

    def _to_job(self, row: JobRecord) -> Job:
        return Job(
            id=row.id,
            status=JobStatus(row.status),
            payload=json.loads(row.payload_json or "{}"),
            owner_worker_id=row.owner_worker_id,
            lease_expires_at=_as_utc(row.lease_expires_at),
            attempt_count=row.attempt_count,
            max_attempts=row.max_attempts,
            progress=row.progress,
            current_step=row.current_step,
            total_steps=row.total_steps,
            cancel_requested=row.cancel_requested,
            run_at=_as_utc(row.run_at),
            dedupe_key=row.dedupe_key,
            result=json.loads(row.result_json) if row.result_json else None,
            last_error=row.last_error,
            created_at=_as_utc(row.created_at) or _utc_now(),
            updated_at=_as_utc(row.updated_at) or _utc_now(),
            completed_at=_as_utc(row.completed_at),
            version=row.version,
        )

    def _load(self, session: Session, job_id: str) -> Job | None:
        row = session.get(JobRecord, job_id, populate_existing=True)
        if row is None:
            return None
        return self._to_job(row)

    def create_job(self, job: Job | dict[str, object]) -> Job:
        payload = Job.model_validate(job)
        with self._guard("create_job"), self._session_factory.begin() as session:
            row = JobRecord(
                id=payload.id,
                status=payload.status.value,
                payload_json=_encode_json(payload.payload) or "{}",
                owner_worker_id=payload.owner_worker_id,
                lease_expires_at=_as_utc(payload.lease_expires_at),
                attempt_count=payload.attempt_count,
                max_attempts=payload.max_attempts,
                progress=payload.progress,
                current_step=payload.current_step,
                total_steps=payload.total_steps,
                cancel_requested=payload.cancel_requested,
                run_at=_as_utc(payload.run_at),
                dedupe_key=payload.dedupe_key,
                result_json=_encode_json(payload.result),
                last_error=payload.last_error,
                created_at=_as_utc(payload.created_at),
                updated_at=_as_utc(payload.updated_at),
                completed_at=_as_utc(payload.completed_at),
                version=payload.version,
            )
            session.add(row)
            session.flush()
            return self._to_job(row)

    def get_job(self, job_id: str) -> Job | None:
        with self._guard("get_job"), self._session_factory() as session:
            return self._load(session, job_id)

    def list_jobs(
        self, status: JobStatus | None = None, owner_worker_id: str | None = None
    ) -> list[Job]:
        stmt = select(JobRecord)
        if status is not None:
            stmt = stmt.where(JobRecord.status == status.value)
        if owner_worker_id is not None:
            stmt = stmt.where(JobRecord.owner_worker_id == owner_worker_id)
        stmt = stmt.order_by(JobRecord.created_at.desc(), JobRecord.id.asc())

        with self._guard("list_jobs"), self._session_factory() as session:
            rows = session.scalars(stmt).all()
            return [self._to_job(row) for row in rows]

    def find_active_by_dedupe_key(self, dedupe_key: str) -> Job | None:
        stmt = (
            select(JobRecord)
            .where(
                JobRecord.dedupe_key == dedupe_key,
                JobRecord.status.not_in(_TERMINAL_VALUES),
            )
            .order_by(JobRecord.created_at.asc())
            .limit(1)
        )
        with (
            self._guard("find_active_by_dedupe_key"),
            self._session_factory() as session,
        ):
            row = session.scalars(stmt).first()
            return self._to_job(row) if row is not None else None

    def try_claim_one(
        self, candidate_filter: ClaimFilter, new_owner: str, lease_until: datetime
    ) -> Job | None:
        now = _as_utc(candidate_filter.now)
        stmt = select(JobRecord.id, JobRecord.version).where(
            JobRecord.cancel_requested.is_(False),
            or_(
                and_(
                    JobRecord.status == JobStatus.PENDING.value,
                    or_(JobRecord.run_at.is_(None), JobRecord.run_at <= now),
                ),
                and_(
                    JobRecord.status.in_(_OWNED_VALUES),
                    JobRecord.lease_expires_at < now,
                ),
            ),
        )
        if candidate_filter.exclude_ids:
            stmt = stmt.where(JobRecord.id.not_in(sorted(candidate_filter.exclude_ids)))
        stmt = stmt.order_by(JobRecord.created_at.asc(), JobRecord.id.asc()).limit(1)

        with self._guard("claim"):
            # Read and write in separate transactions so SQLite never has to
            # upgrade a shared lock while another writer holds one.
            with self._session_factory() as session:
                candidate = session.execute(stmt).first()
            if candidate is None:
                return None

            job_id, version = candidate
            with self._session_factory.begin() as session:
                result = session.execute(
                    update(JobRecord)
                    .where(JobRecord.id == job_id, JobRecord.version == version)
                    .values(
                        status=JobStatus.CLAIMED.value,
                        owner_worker_id=new_owner,
                        lease_expires_at=_as_utc(lease_until),
                        last_error=None,
                        updated_at=now,
                        version=JobRecord.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ClaimRace(job_id)
                return self._load(session, job_id)

    def try_extend_lease(
        self,
        job_id: str,
        owner_id: str,
        lease_until: datetime,
        *,
        now: datetime,
        status: JobStatus | None = None,
        progress: str | None = None,
        current_step: int | None = None,
        total_steps: int | None = None,
    ) -> Job | None:
        values: dict[str, Any] = {
            "lease_expires_at": _as_utc(lease_until),
            "updated_at": _as_utc(now),
            "version": JobRecord.version + 1,
        }
        if status is not None:
            values["status"] = status.value
        if progress is not None:
            values["progress"] = progress
        if current_step is not None:
            values["current_step"] = current_step
        if total_steps is not None:
            values["total_steps"] = total_steps

        with self._guard("heartbeat"), self._session_factory.begin() as session:
            result = session.execute(
                update(JobRecord)
                .where(
                    JobRecord.id == job_id,
                    JobRecord.owner_worker_id == owner_id,
                    JobRecord.status.in_(_OWNED_VALUES),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return self._load(session, job_id)

    def try_finalize(
        self,
        job_id: str,
        owner_id: str,
        new_status: JobStatus,
        fields: dict[str, Any],
        *,
        now: datetime,
        expected_attempt_count: int | None = None,
        require_uncanceled: bool = False,
    ) -> Job | None:
        conditions = [
            JobRecord.id == job_id,
            JobRecord.owner_worker_id == owner_id,
            JobRecord.status.in_(_OWNED_VALUES),
        ]
        if expected_attempt_count is not None:
            conditions.append(JobRecord.attempt_count == expected_attempt_count)
        if require_uncanceled:
            conditions.append(JobRecord.cancel_requested.is_(False))

        values = _column_values(fields)
        values.update(
            status=new_status.value,
            owner_worker_id=None,
            lease_expires_at=None,
            updated_at=_as_utc(now),
            version=JobRecord.version + 1,
        )

        with self._guard("release"), self._session_factory.begin() as session:
            result = session.execute(
                update(JobRecord)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return self._load(session, job_id)

    def request_cancel(self, job_id: str, *, now: datetime) -> Job:
        for _ in range(_CANCEL_RETRIES):
            with self._guard("request_cancel"), self._session_factory.begin() as session:
                current = self._load(session, job_id)
                if current is None:
                    raise KeyError(job_id)
                if current.is_terminal:
                    return current
                if current.cancel_requested and current.status != JobStatus.PENDING:
                    return current

                values: dict[str, Any] = {
                    "cancel_requested": True,
                    "updated_at": _as_utc(now),
                    "version": JobRecord.version + 1,
                }
                if current.status == JobStatus.PENDING:
                    values.update(
                        status=JobStatus.CANCELED.value,
                        completed_at=_as_utc(now),
                        last_error="Job canceled before it was claimed",
                    )

                result = session.execute(
                    update(JobRecord)
                    .where(JobRecord.id == job_id, JobRecord.version == current.version)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    updated = self._load(session, job_id)
                    if updated is not None:
                        return updated

        raise StoreUnavailable("request_cancel", f"job '{job_id}' kept changing")

    def find_expired(self, now: datetime) -> list[Job]:
        stmt = (
            select(JobRecord)
            .where(
                JobRecord.status.in_(_OWNED_VALUES),
                JobRecord.lease_expires_at < _as_utc(now),
            )
            .order_by(JobRecord.lease_expires_at.asc())
        )
        with self._guard("find_expired"), self._session_factory() as session:
            return [self._to_job(row) for row in session.scalars(stmt).all()]

    def try_reclaim(
        self,
        job_id: str,
        expected_version: int,
        new_status: JobStatus,
        fields: dict[str, Any],
        *,
        now: datetime,
    ) -> Job | None:
        values = _column_values(fields)
        values.update(
            status=new_status.value,
            owner_worker_id=None,
            lease_expires_at=None,
            updated_at=_as_utc(now),
            version=JobRecord.version + 1,
        )

        with self._guard("sweep"), self._session_factory.begin() as session:
            result = session.execute(
                update(JobRecord)
                .where(
                    JobRecord.id == job_id,
                    JobRecord.version == expected_version,
                    JobRecord.status.in_(_OWNED_VALUES),
                    JobRecord.lease_expires_at < _as_utc(now),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return self._load(session, job_id)

    def close(self) -> None:
        self._engine.dispose()


_default_repository: JobRepository | None = None


def init_repository(db_url: str) -> JobRepository:
    global _default_repository
    _default_repository = JobRepository(db_url=db_url)
    return _default_repository


def get_repository() -> JobRepository:
    if _default_repository is None:
        raise RuntimeError("Repository is not initialized")
    return _default_repository
