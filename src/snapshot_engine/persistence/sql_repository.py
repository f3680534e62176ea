"""SQLAlchemy implementation of the SnapshotRepository."""

from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, undefer

from snapshot_engine.errors import DuplicateSnapshotError, StorageLimitError
from snapshot_engine.models.snapshot import Snapshot, SnapshotSummary, StorageStats
from snapshot_engine.observability.logging import get_logger, log_fields
from snapshot_engine.persistence.db import make_engine, make_session_factory
from snapshot_engine.persistence.models import Base, SnapshotRow
from snapshot_engine.persistence.repository import (
    DEFAULT_MAX_MEMORY_BYTES,
    DEFAULT_MAX_SNAPSHOTS,
    SnapshotRepository,
    check_links,
    document_size,
    rehome_links,
)

logger = get_logger(__name__)


def _to_row(snapshot: Snapshot) -> SnapshotRow:
    return SnapshotRow(
        id=snapshot.id,
        description=snapshot.description,
        base_path=snapshot.base_path,
        capture_time=snapshot.capture_time,
        trigger_type=snapshot.trigger_type,
        file_count=snapshot.file_count,
        total_size=snapshot.stats.total_size,
        size_bytes=document_size(snapshot),
        document=snapshot.model_dump(mode="json"),
    )


def _from_row(row: SnapshotRow) -> Snapshot:
    return Snapshot.model_validate(row.document)


class SQLSnapshotRepository(SnapshotRepository):
    """Disk-backed snapshot persistence.

    Every operation, including eviction and link rehoming, runs inside a
    single session transaction.
    """

    def __init__(
        self,
        database_url: str,
        max_snapshots: int = DEFAULT_MAX_SNAPSHOTS,
        max_memory_bytes: int = DEFAULT_MAX_MEMORY_BYTES,
    ):
        """Initialize the repository with a database URL.

        Args:
            database_url: SQLAlchemy connection string.
            max_snapshots: Retention limit on the snapshot count.
            max_memory_bytes: Retention limit on the stored document size.
        """
        super().__init__(max_snapshots, max_memory_bytes)
        self.engine = make_engine(database_url)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = make_session_factory(self.engine)

    def _usage(self, session: Session) -> tuple[int, int]:
        count, usage = session.execute(
            select(func.count(SnapshotRow.seq), func.coalesce(func.sum(SnapshotRow.size_bytes), 0))
        ).one()
        return count, usage

    def _remove(
        self, session: Session, victim_row: SnapshotRow, pending: Optional[Snapshot] = None
    ) -> Optional[Snapshot]:
        """Deletes a row and rehomes content linked to it in the same transaction.

        Returns:
            The pending snapshot, rewritten if it linked to the removed one.
        """
        victim = _from_row(victim_row)
        # Links only point at older snapshots
        later_rows = session.scalars(
            select(SnapshotRow)
            .options(undefer(SnapshotRow.document))
            .where(SnapshotRow.seq > victim_row.seq)
            .order_by(SnapshotRow.seq)
        ).all()
        rows_by_id = {row.id: row for row in later_rows}
        dependents = [_from_row(row) for row in later_rows]
        if pending is not None:
            dependents.append(pending)

        for dependent_id, rewritten in rehome_links(victim, dependents).items():
            if pending is not None and dependent_id == pending.id:
                pending = rewritten
                continue
            row = rows_by_id[dependent_id]
            row.document = rewritten.model_dump(mode="json")
            row.size_bytes = document_size(rewritten)

        session.delete(victim_row)
        session.flush()
        return pending

    def store(self, snapshot: Snapshot) -> str:
        with self.SessionLocal.begin() as session:
            existing = session.scalar(select(SnapshotRow.seq).where(SnapshotRow.id == snapshot.id))
            if existing is not None:
                raise DuplicateSnapshotError(f"Snapshot already exists: {snapshot.id}")
            linked = snapshot.linked_ids()
            if linked:
                check_links(
                    snapshot,
                    session.scalars(select(SnapshotRow.id).where(SnapshotRow.id.in_(linked))),
                )

            evicted: list[str] = []
            incoming = snapshot.model_copy(deep=True)
            size = document_size(incoming)
            while True:
                count, usage = self._usage(session)
                if count < self.max_snapshots and usage + size <= self.max_memory_bytes:
                    break
                if size > self.max_memory_bytes or count == 0:
                    raise StorageLimitError(
                        f"Snapshot {snapshot.id} ({size} bytes) exceeds the memory limit "
                        f"of {self.max_memory_bytes} bytes"
                    )
                oldest = session.scalars(
                    select(SnapshotRow).order_by(SnapshotRow.seq).limit(1)
                ).first()
                evicted.append(oldest.id)
                incoming = self._remove(session, oldest, pending=incoming)
                size = document_size(incoming)

            session.add(_to_row(incoming))

        for oldest_id in evicted:
            logger.info(
                "Evicted oldest snapshot",
                extra=log_fields(snapshot_id=oldest_id, incoming_id=snapshot.id),
            )
        logger.debug(
            "Snapshot stored",
            extra=log_fields(snapshot_id=incoming.id, size_bytes=size),
        )
        return incoming.id

    def retrieve(self, snapshot_id: str) -> Optional[Snapshot]:
        with self.SessionLocal() as session:
            row = session.scalar(select(SnapshotRow).where(SnapshotRow.id == snapshot_id))
            return _from_row(row) if row else None

    def delete(self, snapshot_id: str) -> bool:
        with self.SessionLocal.begin() as session:
            row = session.scalar(select(SnapshotRow).where(SnapshotRow.id == snapshot_id))
            if row is None:
                return False
            self._remove(session, row)
        logger.debug("Snapshot deleted", extra=log_fields(snapshot_id=snapshot_id))
        return True

    def storage_stats(self) -> StorageStats:
        with self.SessionLocal() as session:
            count, usage = self._usage(session)
        return StorageStats(
            snapshot_count=count,
            memory_usage=usage,
            max_snapshots=self.max_snapshots,
            max_memory_bytes=self.max_memory_bytes,
            utilization_percent=self._utilization(count),
        )

    def exists(self, snapshot_id: str) -> bool:
        with self.SessionLocal() as session:
            seq = session.scalar(select(SnapshotRow.seq).where(SnapshotRow.id == snapshot_id))
            return seq is not None

    def latest(self, base_path: Optional[str] = None) -> Optional[Snapshot]:
        with self.SessionLocal() as session:
            stmt = select(SnapshotRow).order_by(SnapshotRow.seq.desc()).limit(1)
            if base_path is not None:
                stmt = stmt.where(SnapshotRow.base_path == base_path)
            row = session.scalar(stmt)
            return _from_row(row) if row else None

    def clear(self) -> int:
        with self.SessionLocal.begin() as session:
            count, _ = self._usage(session)
            session.execute(delete(SnapshotRow))
            return count

    def list(
        self,
        *,
        limit: Optional[int] = None,
        description: Optional[str] = None,
        trigger_type: Optional[str] = None,
        ascending: bool = False,
    ) -> list[SnapshotSummary]:
        order = SnapshotRow.seq.asc() if ascending else SnapshotRow.seq.desc()
        stmt = select(SnapshotRow).order_by(order)
        if description:
            stmt = stmt.where(SnapshotRow.description.ilike(f"%{description}%"))
        if trigger_type is not None:
            stmt = stmt.where(SnapshotRow.trigger_type == trigger_type)
        if limit is not None:
            stmt = stmt.limit(limit)

        with self.SessionLocal() as session:
            rows = session.scalars(stmt).all()
            return [
                SnapshotSummary(
                    id=row.id,
                    description=row.description,
                    timestamp=row.capture_time,
                    file_count=row.file_count,
                    total_size=row.total_size,
                    trigger_type=row.trigger_type,
                    base_path=row.base_path,
                )
                for row in rows
            ]
