"""Durable job store mirroring the Router's request lifecycle.

Two tables:
    1. jobs          - one row per requestId, never deleted.
    2. last_heights  - highest fully processed block per event type.

Status transitions::

    PENDING -> RECEIVED -> FULFILLING -> FULFILLED
                                      -> FAILED
    (any open or FAILED) ------------> FULFILLED | CANCELLED  (from chain events)

Settled rows (FULFILLED, CANCELLED) never change status again.
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, Integer, String, Text, create_engine, func, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from ..models import JobRecord, JobStatus, RequestCreatedEvent
from ..utils.encoding import to_bytes32, to_hex

logger = logging.getLogger(__name__)


class Uint256(TypeDecorator):
    """Unsigned 256-bit integers stored as decimal text."""

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value: int | None, dialect: Any) -> str | None:
        return None if value is None else str(int(value))

    def process_result_value(self, value: str | None, dialect: Any) -> int | None:
        return None if value is None else int(value)


class Base(DeclarativeBase):
    pass


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(66), unique=True, index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), index=True, nullable=False)

    # Mirrored request parameters (NULL on rows backfilled from a terminal event)
    consumer: Mapped[str | None] = mapped_column(String(42), index=True)
    provider: Mapped[str | None] = mapped_column(String(42), index=True)
    fee: Mapped[int | None] = mapped_column(Uint256)
    data_spec: Mapped[str | None] = mapped_column(Text)
    gas_price_limit: Mapped[int | None] = mapped_column(Uint256)
    expires_at: Mapped[int | None] = mapped_column(Integer)
    callback_selector: Mapped[str | None] = mapped_column(String(10))
    nonce: Mapped[int | None] = mapped_column(Uint256)
    request_height: Mapped[int | None] = mapped_column(Integer)
    request_tx_ref: Mapped[str | None] = mapped_column(String(66))

    # Fulfilment progress
    requested_data: Mapped[int | None] = mapped_column(Uint256)
    fulfill_tx_ref: Mapped[str | None] = mapped_column(String(66))
    fulfill_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    submitted_height: Mapped[int | None] = mapped_column(Integer)
    cancel_tx_ref: Mapped[str | None] = mapped_column(String(66))
    completion_height: Mapped[int | None] = mapped_column(Integer)
    status_reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_record(self) -> JobRecord:
        return JobRecord(
            request_id=self.request_id,
            status=JobStatus(self.status),
            consumer=self.consumer,
            provider=self.provider,
            fee=self.fee,
            data_spec=self.data_spec,
            gas_price_limit=self.gas_price_limit,
            expires_at=self.expires_at,
            callback_selector=self.callback_selector,
            nonce=self.nonce,
            request_height=self.request_height,
            request_tx_ref=self.request_tx_ref,
            requested_data=self.requested_data,
            fulfill_tx_ref=self.fulfill_tx_ref,
            fulfill_attempts=self.fulfill_attempts,
            submitted_height=self.submitted_height,
            cancel_tx_ref=self.cancel_tx_ref,
            completion_height=self.completion_height,
            status_reason=self.status_reason,
        )


class LastHeight(Base):
    __tablename__ = "last_heights"

    event_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    height: Mapped[int] = mapped_column(Integer, nullable=False)


def _key(request_id: bytes | str) -> str:
    return to_hex(to_bytes32(request_id))


class JobStore:
    """SQLAlchemy-backed store of ``JobRecord`` rows and scan heights.

    Methods are blocking; async callers run them with ``asyncio.to_thread``.
    On sqlite every session holds a store-wide lock, since the in-memory
    database is a single connection shared across threads.

    Args:
        database_url: SQLAlchemy URL, e.g. ``sqlite:///jobs.db``. The default
            in-memory database is shared by every session of this store.
    """

    def __init__(self, database_url: str = "sqlite://") -> None:
        self.database_url = database_url
        self._lock: AbstractContextManager = nullcontext()
        engine_args: dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            self._lock = threading.RLock()
            engine_args["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_args["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **engine_args)
        Base.metadata.create_all(self.engine)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._lock, self._sessions() as session, session.begin():
            yield session

    @staticmethod
    def _find(session: Session, request_id: str) -> Job | None:
        return session.scalars(select(Job).where(Job.request_id == request_id)).one_or_none()

    def close(self) -> None:
        self.engine.dispose()

    # -- request rows -------------------------------------------------------

    def record_request(self, event: RequestCreatedEvent) -> tuple[JobRecord, bool]:
        """Insert a PENDING job for ``event`` unless one already exists.

        Returns the stored record and whether a new row was created. A row
        backfilled earlier from a terminal event gets its request parameters
        filled in but keeps its status.
        """
        request_id = _key(event.request_id)
        params = {
            "consumer": event.consumer,
            "provider": event.provider,
            "fee": event.fee,
            "data_spec": event.data_spec,
            "gas_price_limit": event.gas_price_limit,
            "expires_at": event.expires_at,
            "callback_selector": event.callback_selector,
            "nonce": event.nonce,
            "request_height": event.meta.block_number,
            "request_tx_ref": event.meta.transaction_hash,
        }
        with self._session() as session:
            job = self._find(session, request_id)
            if job is not None:
                if job.consumer is None:
                    for name, value in params.items():
                        setattr(job, name, value)
                    logger.debug(f"Filled request parameters on backfilled job {request_id[:10]}...")
                return job.to_record(), False

            job = Job(request_id=request_id, status=JobStatus.PENDING.value, fulfill_attempts=0, **params)
            session.add(job)
            session.flush()
            logger.info(f"New job {request_id[:10]}... for provider {event.provider[:8]}...")
            return job.to_record(), True

    def get(self, request_id: bytes | str) -> JobRecord | None:
        with self._session() as session:
            job = self._find(session, _key(request_id))
            return job.to_record() if job else None

    def jobs_with_status(self, *statuses: JobStatus) -> list[JobRecord]:
        """Return jobs in any of ``statuses`` in insertion order."""
        with self._session() as session:
            rows = session.scalars(
                select(Job).where(Job.status.in_([s.value for s in statuses])).order_by(Job.id)
            )
            return [job.to_record() for job in rows]

    def count_by_status(self) -> dict[str, int]:
        with self._session() as session:
            rows = session.execute(select(Job.status, func.count()).group_by(Job.status))
            return {status: count for status, count in rows}

    # -- transitions --------------------------------------------------------

    def mark_received(self, request_id: bytes | str) -> bool:
        """Claim a PENDING job for processing. False if it was not PENDING."""
        with self._session() as session:
            job = self._find(session, _key(request_id))
            if job is None or job.status != JobStatus.PENDING.value:
                return False
            job.status = JobStatus.RECEIVED.value
            return True

    def mark_fulfilling(
        self,
        request_id: bytes | str,
        requested_data: int,
        tx_ref: str,
        height: int,
    ) -> JobRecord | None:
        """Record an outbound fulfilment before it is broadcast.

        Returns None (and changes nothing) if the job is missing or settled.
        """
        with self._session() as session:
            job = self._find(session, _key(request_id))
            if job is None or JobStatus(job.status).is_settled:
                return None
            job.status = JobStatus.FULFILLING.value
            job.requested_data = requested_data
            job.fulfill_tx_ref = to_hex(tx_ref)
            job.submitted_height = height
            job.fulfill_attempts += 1
            session.flush()
            return job.to_record()

    def _settle(
        self,
        request_id: bytes | str,
        status: JobStatus,
        height: int | None,
        **fields: Any,
    ) -> JobRecord:
        key = _key(request_id)
        with self._session() as session:
            job = self._find(session, key)
            if job is None:
                job = Job(request_id=key, status=status.value, fulfill_attempts=0)
                session.add(job)
                logger.info(f"Backfilled job {key[:10]}... as {status.value}")
            elif JobStatus(job.status).is_settled:
                if job.status != status.value:
                    logger.warning(
                        f"Job {key[:10]}... already {job.status}, ignoring {status.value}"
                    )
                return job.to_record()
            job.status = status.value
            job.completion_height = height
            for name, value in fields.items():
                if value is not None:
                    setattr(job, name, value)
            session.flush()
            return job.to_record()

    def mark_fulfilled(
        self,
        request_id: bytes | str,
        tx_ref: str | None,
        height: int | None,
        requested_data: int | None = None,
    ) -> JobRecord:
        return self._settle(
            request_id,
            JobStatus.FULFILLED,
            height,
            fulfill_tx_ref=to_hex(tx_ref) if tx_ref else None,
            requested_data=requested_data,
        )

    def mark_cancelled(self, request_id: bytes | str, tx_ref: str | None, height: int | None) -> JobRecord:
        return self._settle(
            request_id,
            JobStatus.CANCELLED,
            height,
            cancel_tx_ref=to_hex(tx_ref) if tx_ref else None,
        )

    def mark_failed(self, request_id: bytes | str, reason: str) -> JobRecord | None:
        """Give up on a job. Settled jobs are left as they are."""
        with self._session() as session:
            job = self._find(session, _key(request_id))
            if job is None or JobStatus(job.status).is_settled:
                return None
            job.status = JobStatus.FAILED.value
            job.status_reason = reason
            session.flush()
            logger.warning(f"Job {job.request_id[:10]}... failed: {reason}")
            return job.to_record()

    def record_reason(self, request_id: bytes | str, reason: str) -> None:
        with self._session() as session:
            job = self._find(session, _key(request_id))
            if job is not None:
                job.status_reason = reason

    # -- scan heights -------------------------------------------------------

    def last_height(self, event_name: str) -> int | None:
        with self._session() as session:
            row = session.get(LastHeight, event_name)
            return row.height if row else None

    def update_last_height(self, event_name: str, height: int) -> int:
        """Raise the committed height for ``event_name``; never lowers it."""
        with self._session() as session:
            row = session.get(LastHeight, event_name)
            if row is None:
                session.add(LastHeight(event_name=event_name, height=height))
                return height
            if height > row.height:
                row.height = height
            return row.height
